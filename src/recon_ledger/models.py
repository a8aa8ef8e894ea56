"""Entity dataclasses stored by the reconciliation ledger.

Entities are immutable views of records. ``to_record`` produces the mapping
handed to the record store; ``from_record`` rebuilds an entity from whatever
the store returns, normalising day fields to :class:`~datetime.date`,
instants to timezone-aware UTC :class:`~datetime.datetime` values, money to
:class:`~decimal.Decimal` and enumerated fields to their enum members.

Patch dataclasses describe partial updates: every field defaults to ``None``,
which means "leave unchanged".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type, TypeVar

from .constants import (
    AuditAction,
    EntityType,
    NotificationType,
    SalaryType,
    SaleType,
    StaffRole,
    StockEntryType,
    UserRole,
)


E = TypeVar("E", bound="Entity")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Strip every non-digit character; blank numbers become ``None``."""

    if phone is None:
        return None
    digits = re.sub(r"\D", "", str(phone))
    return digits or None


def to_day(value: Any) -> Optional[date]:
    """Normalise a day-like value (date, datetime or ISO string) to a date."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    if "T" in text or " " in text:
        return datetime.fromisoformat(text).date()
    return date.fromisoformat(text)


def to_instant(value: Any) -> Optional[datetime]:
    """Normalise an instant to a timezone-aware UTC datetime.

    Naive datetimes are assumed to already be expressed in UTC. Bare dates map
    to midnight UTC.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    else:
        moment = datetime.fromisoformat(str(value))
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class Entity:
    """Shared record conversion for the entity dataclasses."""

    DAY_FIELDS: ClassVar[Tuple[str, ...]] = ()
    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("created_at", "updated_at")
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ()
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {}
    DERIVED_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def to_record(self) -> Dict[str, Any]:
        """Return the mapping persisted by the record store.

        Derived properties are stored alongside the regular fields so the raw
        workbook stays readable. An unassigned ``id`` is omitted.
        """

        record = {item.name: getattr(self, item.name) for item in fields(self)}  # type: ignore[arg-type]
        for name in self.DERIVED_FIELDS:
            record[name] = getattr(self, name)
        if record.get("id") is None:
            record.pop("id", None)
        return record

    @classmethod
    def from_record(cls: Type[E], record: Mapping[str, Any]) -> E:
        """Build an entity from a stored record, ignoring unknown keys."""

        values: Dict[str, Any] = {}
        for item in fields(cls):  # type: ignore[arg-type]
            if item.name in record:
                values[item.name] = cls._coerce(item.name, record[item.name])
        return cls(**values)

    @classmethod
    def _coerce(cls, name: str, raw: Any) -> Any:
        if raw is None:
            return None
        if name in cls.DAY_FIELDS:
            return to_day(raw)
        if name in cls.INSTANT_FIELDS:
            return to_instant(raw)
        if name in cls.DECIMAL_FIELDS:
            return to_decimal(raw)
        enum_type = cls.ENUM_FIELDS.get(name)
        if enum_type is not None:
            return enum_type(raw)
        return raw

    def evolve(self: E, **changes: Any) -> E:
        return replace(self, **changes)  # type: ignore[type-var]


@dataclass(frozen=True)
class SalesEntry(Entity):
    """Bags sold on a given day, priced at one of two tiers."""

    date: date
    sale_type: SaleType
    bags_at_price1: int
    bags_at_price2: int
    submitted_by: Optional[int] = None
    id: Optional[int] = None
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    submitted_at: Optional[datetime] = None
    is_submitted: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    DAY_FIELDS: ClassVar[Tuple[str, ...]] = ("date",)
    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("submitted_at", "created_at", "updated_at")
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {"sale_type": SaleType}
    DERIVED_FIELDS: ClassVar[Tuple[str, ...]] = ("total_bags",)

    @property
    def total_bags(self) -> int:
        return self.bags_at_price1 + self.bags_at_price2


@dataclass(frozen=True)
class StockEntry(Entity):
    """A stock movement recorded by a storekeeper."""

    date: date
    entry_type: StockEntryType
    bags_count: int
    submitted_by: Optional[int] = None
    id: Optional[int] = None
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    packer_id: Optional[int] = None
    packer_name: Optional[str] = None
    submitted_at: Optional[datetime] = None
    is_submitted: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    DAY_FIELDS: ClassVar[Tuple[str, ...]] = ("date",)
    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("submitted_at", "created_at", "updated_at")
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {"entry_type": StockEntryType}


@dataclass(frozen=True)
class Settlement(Entity):
    """Reconciliation of the cash received against a sales entry.

    ``remaining_balance`` and ``is_settled`` are always derived from the two
    stored amounts and therefore can never drift from them.
    """

    date: date
    sales_entry_id: int
    expected_amount: Decimal
    settled_amount: Decimal
    settled_by: Optional[int] = None
    id: Optional[int] = None
    settled_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    DAY_FIELDS: ClassVar[Tuple[str, ...]] = ("date",)
    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("settled_at", "created_at", "updated_at")
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ("expected_amount", "settled_amount")
    DERIVED_FIELDS: ClassVar[Tuple[str, ...]] = ("remaining_balance", "is_settled")

    @property
    def remaining_balance(self) -> Decimal:
        return self.expected_amount - self.settled_amount

    @property
    def is_settled(self) -> bool:
        return self.remaining_balance <= 0


@dataclass(frozen=True)
class SettlementPayment(Entity):
    """One incremental payment applied to a settlement."""

    settlement_id: int
    amount: Decimal
    paid_by: Optional[int] = None
    paid_at: Optional[datetime] = None
    id: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("paid_at", "created_at", "updated_at")
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ("amount",)


@dataclass(frozen=True)
class AuditRecord(Entity):
    """Append-only trace of a mutation; values are kept as text."""

    entity_type: EntityType
    entity_id: int
    action: AuditAction
    changed_by: Optional[int]
    changed_at: datetime
    id: Optional[int] = None
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    reason: Optional[str] = None

    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("changed_at",)
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {
        "entity_type": EntityType,
        "action": AuditAction,
    }


@dataclass(frozen=True)
class Notification(Entity):
    user_id: int
    type: NotificationType
    title: str
    message: str
    id: Optional[int] = None
    is_read: bool = False
    related_entity_type: Optional[EntityType] = None
    related_entity_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {
        "type": NotificationType,
        "related_entity_type": EntityType,
    }


@dataclass(frozen=True)
class UserAccount(Entity):
    """Login identity of a director, manager, receptionist or storekeeper.

    The phone number is persisted in its digits-only form.
    """

    role: UserRole
    name: str
    id: Optional[int] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    two_factor_enabled: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    INSTANT_FIELDS: ClassVar[Tuple[str, ...]] = ("created_at", "updated_at", "last_login")
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {"role": UserRole}

    def __post_init__(self) -> None:
        object.__setattr__(self, "phone", normalize_phone(self.phone))


@dataclass(frozen=True)
class StaffProfile(Entity):
    """Employee record for drivers, packers and other staff."""

    name: str
    email: str
    role: StaffRole
    salary_type: SalaryType
    id: Optional[int] = None
    phone: Optional[str] = None
    fixed_salary: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ("fixed_salary", "commission_rate")
    ENUM_FIELDS: ClassVar[Mapping[str, Type[Enum]]] = {
        "role": StaffRole,
        "salary_type": SalaryType,
    }


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class Patch:
    """Partial update; fields left at ``None`` are not touched."""

    def changes(self) -> Dict[str, Any]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)  # type: ignore[arg-type]
            if getattr(self, item.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass(frozen=True)
class SalesEntryPatch(Patch):
    bags_at_price1: Optional[int] = None
    bags_at_price2: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockEntryPatch(Patch):
    bags_count: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class UserAccountPatch(Patch):
    phone: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    role: Optional[UserRole] = None
    name: Optional[str] = None
    two_factor_enabled: Optional[bool] = None
    is_active: Optional[bool] = None
    last_login: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "phone", normalize_phone(self.phone))


@dataclass(frozen=True)
class StaffProfilePatch(Patch):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[StaffRole] = None
    salary_type: Optional[SalaryType] = None
    fixed_salary: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None


__all__ = [
    "Entity",
    "SalesEntry",
    "StockEntry",
    "Settlement",
    "SettlementPayment",
    "AuditRecord",
    "Notification",
    "UserAccount",
    "StaffProfile",
    "Patch",
    "SalesEntryPatch",
    "StockEntryPatch",
    "UserAccountPatch",
    "StaffProfilePatch",
    "normalize_phone",
    "to_day",
    "to_instant",
    "to_decimal",
]
