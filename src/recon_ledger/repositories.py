"""Typed repositories over the record store.

Each repository maps one collection onto its entity dataclass. Repositories
stamp ``created_at``/``updated_at``, normalise records on the way out and
order listings newest first. Writes can be staged into an existing
:class:`~recon_ledger.record_store.Batch` so callers can commit an entity
together with its audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import UTC, date, datetime, time
from typing import Any, ClassVar, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from . import log
from .constants import CollectionName, EntityType, StaffRole, UserRole
from .errors import InvariantViolation, ReasonRequired
from .models import (
    AuditRecord,
    Entity,
    Notification,
    Patch,
    SalesEntry,
    Settlement,
    SettlementPayment,
    StaffProfile,
    StockEntry,
    UserAccount,
    normalize_phone,
)
from .record_store import Batch, RecordStore


E = TypeVar("E", bound=Entity)

FieldChanges = Dict[str, Tuple[Any, Any]]


def utcnow() -> datetime:
    return datetime.now(UTC)


def prepare_update(existing: E, patch: Patch) -> Tuple[E, FieldChanges]:
    """Merge ``patch`` into ``existing`` without touching storage.

    Args:
        existing (Entity): Current state of the entity.
        patch (Patch): Partial update; ``None`` fields are ignored.

    Returns:
        tuple[Entity, dict[str, tuple[Any, Any]]]: The merged entity and the
            ``field -> (old, new)`` mapping of values that actually changed.
    """

    requested = patch.changes()
    if not requested:
        return existing, {}
    merged = existing.evolve(**requested)
    changed = {
        name: (getattr(existing, name), getattr(merged, name))
        for name in requested
        if getattr(existing, name) != getattr(merged, name)
    }
    return merged, changed


class Repository(Generic[E]):
    """CRUD access to one collection.

    Subclasses declare the ``collection``, the ``entity`` dataclass and the
    ``date_field`` used for ordering and range queries.
    """

    collection: ClassVar[CollectionName]
    entity: ClassVar[Type[Entity]]
    date_field: ClassVar[str] = "date"

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    @property
    def name(self) -> str:
        return self.collection.value

    def _stamp(self, entity: E, *, created: bool) -> E:
        available = {item.name for item in fields(entity)}  # type: ignore[arg-type]
        now = utcnow()
        changes: Dict[str, Any] = {}
        if created and "created_at" in available:
            changes["created_at"] = now
        if "updated_at" in available:
            changes["updated_at"] = now
        return entity.evolve(**changes) if changes else entity

    def _load(self, record: Dict[str, Any]) -> E:
        return self.entity.from_record(record)  # type: ignore[return-value]

    def _sort_newest_first(self, entities: List[E]) -> List[E]:
        # Equal dates keep key order.
        keyed = sorted(entities, key=lambda entity: entity.id or 0)  # type: ignore[attr-defined]
        return sorted(keyed, key=self._sort_key, reverse=True)

    def _sort_key(self, entity: E) -> Any:
        value = getattr(entity, self.date_field)
        if value is None:
            return datetime.min.replace(tzinfo=UTC)
        if isinstance(value, datetime):
            return value
        return datetime.combine(value, time.min, tzinfo=UTC)

    async def add(self, entity: E, *, batch: Optional[Batch] = None) -> E:
        """Persist a new entity and return it with its assigned ``id``.

        When ``batch`` is supplied the write is only staged; the returned
        entity already carries its reserved key.
        """

        stamped = self._stamp(entity.evolve(id=None), created=True)
        if batch is not None:
            key = batch.add(self.name, stamped.to_record())
        else:
            key = await self.store.add(self.name, stamped.to_record())
            log.info("Added %s %d", self.name, key)
        return stamped.evolve(id=key)

    async def get(self, entity_id: int) -> E:
        """Return the entity stored under ``entity_id``.

        Raises:
            NotFound: If the key is absent.
        """

        return self._load(await self.store.get(self.name, entity_id))

    async def list_all(self) -> List[E]:
        """Return every entity, newest first."""

        records = await self.store.get_all(self.name)
        return self._sort_newest_first([self._load(record) for record in records])

    async def list_by_date_range(self, start: date, end: date) -> List[E]:
        """Return entities whose date field lies in ``[start, end]``, newest first.

        Instant fields are compared by whole days when ``start``/``end`` are
        plain dates.
        """

        lower, upper = self._bounds(start, end)
        if self.date_field in self.store.index_names(self.name):
            records = await self.store.get_by_index(self.name, self.date_field, lower=lower, upper=upper)
            entities = [self._load(record) for record in records]
        else:
            lower_key = self._sort_key_of(lower)
            upper_key = self._sort_key_of(upper)
            entities = [
                entity
                for entity in (self._load(record) for record in await self.store.get_all(self.name))
                if getattr(entity, self.date_field) is not None
                and lower_key <= self._sort_key(entity) <= upper_key
            ]
        log.debug("Range query on %s returned %d records", self.name, len(entities))
        return self._sort_newest_first(entities)

    def _bounds(self, start: date, end: date) -> Tuple[Any, Any]:
        if self.date_field in self.entity.INSTANT_FIELDS:
            if not isinstance(start, datetime):
                start = datetime.combine(start, time.min, tzinfo=UTC)
            if not isinstance(end, datetime):
                end = datetime.combine(end, time.max, tzinfo=UTC)
        return start, end

    @staticmethod
    def _sort_key_of(value: Any) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return datetime.combine(value, time.min, tzinfo=UTC)

    async def put(self, entity: E, *, batch: Optional[Batch] = None) -> E:
        """Replace the stored entity wholesale, refreshing ``updated_at``."""

        stamped = self._stamp(entity, created=False)
        if batch is not None:
            batch.put(self.name, stamped.to_record())
        else:
            await self.store.put(self.name, stamped.to_record())
            log.info("Updated %s %d", self.name, stamped.id)  # type: ignore[attr-defined]
        return stamped

    async def update(self, entity_id: int, patch: Patch) -> E:
        """Load, merge ``patch`` and persist under the per-key lock.

        A patch that changes nothing leaves the stored record untouched.

        Raises:
            NotFound: If ``entity_id`` is absent.
        """

        async with self.store.locked(self.name, entity_id):
            existing = await self.get(entity_id)
            merged, changed = prepare_update(existing, patch)
            if not changed:
                log.debug("Update of %s %d changed nothing", self.name, entity_id)
                return existing
            return await self.put(merged)


class SubmittedEntryRepository(Repository[E]):
    """Repository for submitted entries.

    Submitted entries only change inside a batch that also carries their
    audit records, so plain ``put``/``update`` calls are refused.
    """

    async def put(self, entity: E, *, batch: Optional[Batch] = None) -> E:
        if batch is None:
            log.error("Refusing unaudited write to %s %s", self.name, entity.id)  # type: ignore[attr-defined]
            raise InvariantViolation(
                "Submitted entries change only through an audited update",
                entity=self.name,
                entity_id=entity.id,  # type: ignore[attr-defined]
            )
        return await super().put(entity, batch=batch)

    async def update(self, entity_id: int, patch: Patch, *, reason: Optional[str] = None) -> E:
        """Reject direct updates of a submitted entry.

        Raises:
            ReasonRequired: If ``reason`` is missing or blank.
            InvariantViolation: If the patch changes anything; submitted
                entries change through the audited update operations.
        """

        if reason is None or not reason.strip():
            log.warning("Rejected update of %s %d without a reason", self.name, entity_id)
            raise ReasonRequired(self.name, entity_id)
        return await super().update(entity_id, patch)


class SalesEntryRepository(SubmittedEntryRepository[SalesEntry]):
    collection = CollectionName.SALES_ENTRIES
    entity = SalesEntry


class StockEntryRepository(SubmittedEntryRepository[StockEntry]):
    collection = CollectionName.STOCK_ENTRIES
    entity = StockEntry

    async def list_by_submitter(self, user_id: int) -> List[StockEntry]:
        records = await self.store.get_by_index(self.name, "submitted_by", user_id)
        return self._sort_newest_first([self._load(record) for record in records])


class SettlementRepository(Repository[Settlement]):
    collection = CollectionName.SETTLEMENTS
    entity = Settlement

    async def list_by_sales_entry(self, sales_entry_id: int) -> List[Settlement]:
        records = await self.store.get_by_index(self.name, "sales_entry_id", sales_entry_id)
        return [self._load(record) for record in records]

    async def list_unsettled(self) -> List[Settlement]:
        records = await self.store.get_by_index(self.name, "is_settled", False)
        return self._sort_newest_first([self._load(record) for record in records])


class SettlementPaymentRepository(Repository[SettlementPayment]):
    collection = CollectionName.SETTLEMENT_PAYMENTS
    entity = SettlementPayment
    date_field = "paid_at"

    async def list_by_settlement(self, settlement_id: int) -> List[SettlementPayment]:
        """Return the payments applied to a settlement, oldest first."""

        records = await self.store.get_by_index(self.name, "settlement_id", settlement_id)
        payments = [self._load(record) for record in records]
        return sorted(payments, key=lambda payment: (self._sort_key(payment), payment.id or 0))


class AuditRecordRepository(Repository[AuditRecord]):
    """Append-only access to the audit trail."""

    collection = CollectionName.AUDIT_RECORDS
    entity = AuditRecord
    date_field = "changed_at"

    async def list_by_entity(self, entity_type: EntityType, entity_id: int) -> List[AuditRecord]:
        records = await self.store.get_by_index(self.name, "entity_id", entity_id)
        matching = [
            record
            for record in (self._load(raw) for raw in records)
            if record.entity_type == entity_type
        ]
        return self._sort_newest_first(matching)

    async def list_by_entity_type(self, entity_type: EntityType) -> List[AuditRecord]:
        records = await self.store.get_by_index(self.name, "entity_type", entity_type)
        return self._sort_newest_first([self._load(record) for record in records])

    async def put(self, entity: AuditRecord, *, batch: Optional[Batch] = None) -> AuditRecord:
        log.error("Refusing to rewrite audit record %s", entity.id)
        raise InvariantViolation(
            "Audit records are append-only",
            entity=self.name,
            entity_id=entity.id,
        )


class NotificationRepository(Repository[Notification]):
    collection = CollectionName.NOTIFICATIONS
    entity = Notification
    date_field = "created_at"

    async def list_for_user(self, user_id: int, *, is_read: Optional[bool] = None) -> List[Notification]:
        """Return a user's notifications, newest first, optionally by read flag."""

        records = await self.store.get_by_index(self.name, "user_id", user_id)
        notifications = [self._load(record) for record in records]
        if is_read is not None:
            notifications = [item for item in notifications if item.is_read is is_read]
        return self._sort_newest_first(notifications)

    async def mark_read(self, notification_id: int) -> Notification:
        async with self.store.locked(self.name, notification_id):
            notification = await self.get(notification_id)
            if notification.is_read:
                return notification
            return await self.put(notification.evolve(is_read=True))


class UserAccountRepository(Repository[UserAccount]):
    collection = CollectionName.USER_ACCOUNTS
    entity = UserAccount
    date_field = "created_at"

    async def get_by_phone(self, phone: str) -> Optional[UserAccount]:
        """Find an account by phone number in any formatting."""

        digits = normalize_phone(phone)
        if digits is None:
            return None
        records = await self.store.get_by_index(self.name, "phone", digits)
        return self._load(records[0]) if records else None

    async def list_by_role(self, role: UserRole) -> List[UserAccount]:
        records = await self.store.get_by_index(self.name, "role", role)
        return [self._load(record) for record in records]


class StaffProfileRepository(Repository[StaffProfile]):
    collection = CollectionName.STAFF_PROFILES
    entity = StaffProfile
    date_field = "created_at"

    async def get_by_email(self, email: str) -> Optional[StaffProfile]:
        records = await self.store.get_by_index(self.name, "email", email)
        return self._load(records[0]) if records else None

    async def list_by_role(self, role: StaffRole) -> List[StaffProfile]:
        records = await self.store.get_by_index(self.name, "role", role)
        return [self._load(record) for record in records]

    async def delete(self, staff_id: int) -> None:
        await self.store.delete(self.name, staff_id)
        log.info("Deleted %s %d", self.name, staff_id)


@dataclass(frozen=True)
class Repositories:
    """All repositories bound to one store handle."""

    sales_entries: SalesEntryRepository
    stock_entries: StockEntryRepository
    settlements: SettlementRepository
    settlement_payments: SettlementPaymentRepository
    audit_records: AuditRecordRepository
    notifications: NotificationRepository
    user_accounts: UserAccountRepository
    staff_profiles: StaffProfileRepository

    @classmethod
    def for_store(cls, store: RecordStore) -> "Repositories":
        return cls(
            sales_entries=SalesEntryRepository(store),
            stock_entries=StockEntryRepository(store),
            settlements=SettlementRepository(store),
            settlement_payments=SettlementPaymentRepository(store),
            audit_records=AuditRecordRepository(store),
            notifications=NotificationRepository(store),
            user_accounts=UserAccountRepository(store),
            staff_profiles=StaffProfileRepository(store),
        )


__all__ = [
    "Repository",
    "Repositories",
    "prepare_update",
    "SalesEntryRepository",
    "StockEntryRepository",
    "SettlementRepository",
    "SettlementPaymentRepository",
    "AuditRecordRepository",
    "NotificationRepository",
    "UserAccountRepository",
    "StaffProfileRepository",
]
