"""Business logic layer for the reconciliation ledger.

This module holds the rules that sit on top of the record store: entries are
persisted already submitted, only supervisors may change them afterwards and
only with a reason, settlements keep their derived balance consistent with the
sales entry they reconcile, and every sensitive mutation is committed in the
same batch as its audit records.

All public operations are coroutines taking a :class:`RuntimeContext`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from . import data_manager, log, repositories
from .audit import AuditLedger
from .constants import (
    SCHEMA_VERSION,
    SUPERVISORY_ROLES,
    AuditAction,
    CollectionName,
    EntityType,
    NotificationType,
    SalaryType,
    SaleType,
    StaffRole,
    StockEntryType,
    UserRole,
)
from .errors import (
    InvalidAmount,
    InvariantViolation,
    PermissionDenied,
    ReasonRequired,
    SettlementLocked,
    Unauthenticated,
)
from .models import (
    AuditRecord,
    Notification,
    Patch,
    SalesEntry,
    SalesEntryPatch,
    Settlement,
    SettlementPayment,
    StaffProfile,
    StaffProfilePatch,
    StockEntry,
    StockEntryPatch,
    UserAccount,
    UserAccountPatch,
    to_day,
)
from .record_store import Batch, RecordStore
from .repositories import Repositories, Repository, prepare_update
from .schema import build_schema
from .session import Actor, Session


@dataclass(frozen=True)
class RuntimeContext:
    """Composition root shared by every operation.

    Owns the store handle together with the repositories, the audit ledger and
    the session bound to it.
    """

    settings: data_manager.ConfigSettings
    store: RecordStore
    session: Session = field(default_factory=Session)
    repos: Repositories = field(init=False, repr=False, compare=False)
    audit: AuditLedger = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "repos", Repositories.for_store(self.store))
        object.__setattr__(self, "audit", AuditLedger(self.store))


@dataclass(frozen=True)
class SalesEntryCommand:
    """User intent for recording a day's sales."""

    date: date
    sale_type: SaleType
    bags_at_price1: int
    bags_at_price2: int
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockEntryCommand:
    """User intent for recording a stock movement."""

    date: date
    entry_type: StockEntryType
    bags_count: int
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    packer_id: Optional[int] = None
    packer_name: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class UserAccountCommand:
    """User intent for creating a login account."""

    role: UserRole
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    two_factor_enabled: bool = False


@dataclass(frozen=True)
class StaffProfileCommand:
    """User intent for registering an employee."""

    name: str
    email: str
    role: StaffRole
    salary_type: SalaryType
    phone: Optional[str] = None
    fixed_salary: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


async def load_runtime_context(config_path: Optional[Path] = None, *, session: Optional[Session] = None) -> RuntimeContext:
    """Load configuration settings and open the record store.

    The helper resolves ``config.ini``, parses settings, and opens (creating or
    upgrading when needed) the workbook-backed record store at the configured
    schema version.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        session (Session | None): Session to bind; a fresh, signed-out session
            is created when omitted.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        SchemaError: If the workbook is newer than the configured schema.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = await RecordStore.open(
        build_schema(settings.schema_version),
        settings.data_file,
        autosave=settings.autosave,
    )
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store, session=session or Session())


async def close_runtime_context(context: RuntimeContext) -> None:
    await context.store.close()


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version, or the version stored
            in the workbook, differs from ``SCHEMA_VERSION``.
    """

    for source, version in (
        ("configuration", context.settings.schema_version),
        ("workbook", context.store.version),
    ):
        if version != SCHEMA_VERSION:
            log.error(
                "Schema mismatch in %s: expected %s, found %s",
                source,
                SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Schema mismatch in %s: expected %s, found %s" % (source, SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", SCHEMA_VERSION)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def require_actor(context: RuntimeContext, operation: str) -> Actor:
    """Return the signed-in actor or raise :class:`Unauthenticated`."""

    actor = context.session.current_actor()
    if actor is None:
        log.warning("Unauthenticated attempt to %s", operation)
        raise Unauthenticated(operation)
    return actor


def require_supervisor(
    actor: Actor,
    operation: str,
    *,
    entity: Optional[str] = None,
    entity_id: Any = None,
) -> None:
    if actor.role not in SUPERVISORY_ROLES:
        log.warning("User %d (%s) may not %s", actor.user_id, actor.role.value, operation)
        raise PermissionDenied(operation, actor.role, entity=entity, entity_id=entity_id)


def require_reason(reason: Optional[str], entity: str, entity_id: Any) -> str:
    """Return ``reason`` stripped, rejecting missing or blank values."""

    if reason is None or not str(reason).strip():
        log.warning("Rejected update of %s %s without a reason", entity, entity_id)
        raise ReasonRequired(entity, entity_id)
    return str(reason).strip()


def require_bag_count(value: Any, field_name: str) -> int:
    """Validate a bag count: a non-negative integer.

    Raises:
        InvalidAmount: If ``value`` is not an integer or is negative.
    """

    if isinstance(value, bool) or not isinstance(value, int):
        log.error("Bag count validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value, f"{field_name} must be a whole number of bags")
    if value < 0:
        log.error("Bag count validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value, f"{field_name} must be zero or positive")
    return value


def parse_amount(value: Any, field_name: str) -> Decimal:
    """Convert ``value`` into a non-negative, finite :class:`Decimal`.

    Strings and numbers are accepted; booleans are not.

    Raises:
        InvalidAmount: If the value is non-numeric, NaN, infinite or negative.
    """

    if isinstance(value, bool) or value is None:
        log.error("Monetary value validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value)
    if isinstance(value, float) and not math.isfinite(value):
        log.error("Monetary value validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        log.error("Monetary value validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value) from exc
    if not amount.is_finite():
        log.error("Monetary value validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value)
    if amount < 0:
        log.error("Monetary value validation failed for %s: %r", field_name, value)
        raise InvalidAmount(field_name, value, f"{field_name} must be zero or positive")
    return amount


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


async def create_sales_entry(context: RuntimeContext, command: SalesEntryCommand) -> SalesEntry:
    """Persist a sales entry in its submitted state.

    Entries are never stored as drafts: ``is_submitted`` is always ``True``,
    ``submitted_by`` is the acting user and ``submitted_at`` the current time.
    The entry, its ``create`` and its ``submit`` audit records commit together.

    Args:
        context (RuntimeContext): Runtime context with a signed-in actor.
        command (SalesEntryCommand): Structured intent describing the sale.

    Returns:
        SalesEntry: Stored entry with its assigned ``id``.

    Raises:
        Unauthenticated: If nobody is signed in.
        InvalidAmount: If a bag count is negative or not an integer.
    """

    actor = require_actor(context, "create sales entries")
    require_bag_count(command.bags_at_price1, "bags_at_price1")
    require_bag_count(command.bags_at_price2, "bags_at_price2")

    entry = SalesEntry(
        date=to_day(command.date),
        sale_type=SaleType(command.sale_type),
        bags_at_price1=command.bags_at_price1,
        bags_at_price2=command.bags_at_price2,
        driver_id=command.driver_id,
        driver_name=command.driver_name,
        notes=command.notes,
        submitted_by=actor.user_id,
        submitted_at=repositories.utcnow(),
        is_submitted=True,
    )
    async with context.store.batch() as batch:
        stored = await context.repos.sales_entries.add(entry, batch=batch)
        await context.audit.log_create(EntityType.SALES_ENTRY, stored.id, actor.user_id, batch=batch)
        await context.audit.log_submit(EntityType.SALES_ENTRY, stored.id, actor.user_id, batch=batch)

    log.info(
        "Recorded sales entry %d for %s (bags=%d+%d) by user %d",
        stored.id,
        stored.date,
        stored.bags_at_price1,
        stored.bags_at_price2,
        actor.user_id,
    )
    return stored


async def create_stock_entry(context: RuntimeContext, command: StockEntryCommand) -> StockEntry:
    """Persist a stock entry in its submitted state.

    Mirrors :func:`create_sales_entry`; once stored, the author can no longer
    change the entry.

    Raises:
        Unauthenticated: If nobody is signed in.
        InvalidAmount: If ``bags_count`` is negative or not an integer.
    """

    actor = require_actor(context, "create stock entries")
    require_bag_count(command.bags_count, "bags_count")

    entry = StockEntry(
        date=to_day(command.date),
        entry_type=StockEntryType(command.entry_type),
        bags_count=command.bags_count,
        driver_id=command.driver_id,
        driver_name=command.driver_name,
        packer_id=command.packer_id,
        packer_name=command.packer_name,
        notes=command.notes,
        submitted_by=actor.user_id,
        submitted_at=repositories.utcnow(),
        is_submitted=True,
    )
    async with context.store.batch() as batch:
        stored = await context.repos.stock_entries.add(entry, batch=batch)
        await context.audit.log_create(EntityType.STOCK_ENTRY, stored.id, actor.user_id, batch=batch)
        await context.audit.log_submit(EntityType.STOCK_ENTRY, stored.id, actor.user_id, batch=batch)

    log.info(
        "Recorded stock entry %d (%s, bags=%d) by user %d",
        stored.id,
        stored.entry_type.value,
        stored.bags_count,
        actor.user_id,
    )
    return stored


# ---------------------------------------------------------------------------
# Audited updates
# ---------------------------------------------------------------------------


async def _audited_update(
    context: RuntimeContext,
    repo: Repository[Any],
    entity_type: EntityType,
    entity_id: int,
    patch: Patch,
    reason: Optional[str],
    *,
    operation: str,
    guard: Optional[Callable[[Any], Any]] = None,
    notify: Optional[Callable[[Any, Actor, Batch], Any]] = None,
) -> Any:
    actor = require_actor(context, operation)
    require_supervisor(actor, operation, entity=entity_type.value, entity_id=entity_id)
    reason_text = require_reason(reason, entity_type.value, entity_id)

    async with context.store.locked(repo.name, entity_id):
        existing = await repo.get(entity_id)
        if guard is not None:
            await guard(existing)
        merged, changed = prepare_update(existing, patch)
        if not changed:
            log.debug("Audited update of %s %d changed nothing", entity_type.value, entity_id)
            return existing

        async with context.store.batch() as batch:
            updated = await repo.put(merged, batch=batch)
            for name, (old_value, new_value) in changed.items():
                await context.audit.log_change(
                    entity_type,
                    entity_id,
                    AuditAction.UPDATE,
                    actor.user_id,
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                    reason=reason_text,
                    batch=batch,
                )
            if notify is not None:
                await notify(updated, actor, batch)

    log.info(
        "Updated %s %d (%s) by user %d: %s",
        entity_type.value,
        entity_id,
        ", ".join(sorted(changed)),
        actor.user_id,
        reason_text,
    )
    return updated


def _submitter_notifier(context: RuntimeContext, entity_type: EntityType, label: str) -> Callable[[Any, Actor, Batch], Any]:
    async def notify(entry: Any, actor: Actor, batch: Batch) -> None:
        if entry.submitted_by is None or entry.submitted_by == actor.user_id:
            return
        await context.repos.notifications.add(
            Notification(
                user_id=entry.submitted_by,
                type=NotificationType.ENTRY_UPDATED,
                title=f"{label} updated",
                message=f"Your {label.lower()} {entry.id} dated {entry.date.isoformat()} was updated by a supervisor.",
                related_entity_type=entity_type,
                related_entity_id=entry.id,
            ),
            batch=batch,
        )

    return notify


async def update_sales_entry(
    context: RuntimeContext,
    entry_id: int,
    patch: SalesEntryPatch,
    reason: Optional[str],
) -> SalesEntry:
    """Apply a supervisor's correction to a submitted sales entry.

    Checks run in order: an actor must be signed in, the actor must hold a
    supervisory role, and a non-blank reason must be supplied. No record is
    read or written before those checks pass. The entry is then locked; an
    entry whose settlement has already started is refused. One ``update`` audit
    record per changed field commits in the same batch as the new entry, and
    the original submitter is notified.

    Args:
        context (RuntimeContext): Runtime context with a signed-in actor.
        entry_id (int): Key of the sales entry.
        patch (SalesEntryPatch): Fields to change; ``None`` leaves a field as is.
        reason (str | None): Justification stored on every audit record.

    Returns:
        SalesEntry: The entry after the update (unchanged for a no-op patch).

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
        ReasonRequired: If ``reason`` is missing or blank.
        InvalidAmount: If a bag count is negative or not an integer.
        NotFound: If the entry does not exist.
        SettlementLocked: If a settlement already references the entry.
    """

    for name, value in patch.changes().items():
        if name.startswith("bags_"):
            require_bag_count(value, name)

    async def guard(existing: SalesEntry) -> None:
        if await context.repos.settlements.list_by_sales_entry(existing.id):
            log.warning("Sales entry %d is locked by its settlement", existing.id)
            raise SettlementLocked(existing.id)

    return await _audited_update(
        context,
        context.repos.sales_entries,
        EntityType.SALES_ENTRY,
        entry_id,
        patch,
        reason,
        operation="update sales entries",
        guard=guard,
        notify=_submitter_notifier(context, EntityType.SALES_ENTRY, "Sales entry"),
    )


async def update_stock_entry(
    context: RuntimeContext,
    entry_id: int,
    patch: StockEntryPatch,
    reason: Optional[str],
) -> StockEntry:
    """Apply a supervisor's correction to a submitted stock entry.

    Same rules as :func:`update_sales_entry`, without the settlement lock.
    """

    if patch.bags_count is not None:
        require_bag_count(patch.bags_count, "bags_count")

    return await _audited_update(
        context,
        context.repos.stock_entries,
        EntityType.STOCK_ENTRY,
        entry_id,
        patch,
        reason,
        operation="update stock entries",
        notify=_submitter_notifier(context, EntityType.STOCK_ENTRY, "Stock entry"),
    )


async def update_user_account(
    context: RuntimeContext,
    user_id: int,
    patch: UserAccountPatch,
    reason: Optional[str],
) -> UserAccount:
    """Apply an audited change to a user account.

    Password and PIN changes are recorded with masked values. The account
    holder receives an ``account_modified`` notification when someone else
    made the change.

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
        ReasonRequired: If ``reason`` is missing or blank.
        NotFound: If the account does not exist.
        ConstraintViolation: If the new phone number belongs to another account.
    """

    async def notify(account: UserAccount, actor: Actor, batch: Batch) -> None:
        if account.id == actor.user_id:
            return
        await context.repos.notifications.add(
            Notification(
                user_id=account.id,
                type=NotificationType.ACCOUNT_MODIFIED,
                title="Account updated",
                message="Your account details were changed by a supervisor.",
                related_entity_type=EntityType.USER_ACCOUNT,
                related_entity_id=account.id,
            ),
            batch=batch,
        )

    return await _audited_update(
        context,
        context.repos.user_accounts,
        EntityType.USER_ACCOUNT,
        user_id,
        patch,
        reason,
        operation="update user accounts",
        notify=notify,
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def compute_expected_amount(entry: SalesEntry, price_tier1: Decimal, price_tier2: Decimal) -> Decimal:
    """Return the cash a sales entry should bring in at the given prices."""

    return Decimal(entry.bags_at_price1) * Decimal(price_tier1) + Decimal(entry.bags_at_price2) * Decimal(price_tier2)


async def _load_single_settlement(context: RuntimeContext, sales_entry_id: int) -> Optional[Settlement]:
    settlements = await context.repos.settlements.list_by_sales_entry(sales_entry_id)
    if len(settlements) > 1:
        log.error(
            "Sales entry %d has %d settlements",
            sales_entry_id,
            len(settlements),
        )
        raise InvariantViolation(
            f"sales_entry {sales_entry_id} has {len(settlements)} settlements",
            entity=EntityType.SETTLEMENT.value,
            entity_id=[settlement.id for settlement in settlements],
            field="sales_entry_id",
            value=sales_entry_id,
        )
    return settlements[0] if settlements else None


async def _write_settlement(
    context: RuntimeContext,
    actor: Actor,
    sales_entry_id: int,
    amount: Decimal,
    *,
    notes: Optional[str],
    incremental: bool,
) -> Settlement:
    entry = await context.repos.sales_entries.get(sales_entry_id)
    previous = await _load_single_settlement(context, sales_entry_id)
    now = repositories.utcnow()

    if previous is None:
        expected = compute_expected_amount(
            entry,
            context.settings.price_tier1,
            context.settings.price_tier2,
        )
        settled_amount = amount
    else:
        expected = previous.expected_amount
        settled_amount = previous.settled_amount + amount if incremental else amount

    if incremental and settled_amount > expected:
        log.error(
            "Payment of %s would overpay settlement of sales entry %d (expected %s, settled %s)",
            amount,
            sales_entry_id,
            expected,
            settled_amount - amount,
        )
        raise InvalidAmount(
            "amount",
            amount,
            f"Payment exceeds the remaining balance of {expected - (settled_amount - amount)}",
        )

    async with context.store.batch() as batch:
        if previous is None:
            settlement = Settlement(
                date=entry.date,
                sales_entry_id=sales_entry_id,
                expected_amount=expected,
                settled_amount=settled_amount,
                settled_by=actor.user_id,
                notes=notes,
            )
            if settlement.is_settled:
                settlement = settlement.evolve(settled_at=now)
            stored = await context.repos.settlements.add(settlement, batch=batch)
            await context.audit.log_create(EntityType.SETTLEMENT, stored.id, actor.user_id, batch=batch)
            became_settled = stored.is_settled
        else:
            candidate = previous.evolve(
                settled_amount=settled_amount,
                notes=notes if notes is not None else previous.notes,
            )
            became_settled = candidate.is_settled and not previous.is_settled
            if became_settled:
                candidate = candidate.evolve(settled_at=now)
            elif previous.is_settled and not candidate.is_settled and context.settings.reopen_on_underpayment:
                candidate = candidate.evolve(settled_at=None)

            changed = [
                name
                for name in ("settled_amount", "settled_at", "notes")
                if getattr(previous, name) != getattr(candidate, name)
            ]
            if not changed and not incremental:
                log.debug("Settlement %d unchanged", previous.id)
                return previous
            candidate = candidate.evolve(settled_by=actor.user_id)
            if previous.settled_by != actor.user_id:
                changed.append("settled_by")
            stored = await context.repos.settlements.put(candidate, batch=batch)
            for name in changed:
                await context.audit.log_change(
                    EntityType.SETTLEMENT,
                    stored.id,
                    AuditAction.UPDATE,
                    actor.user_id,
                    field=name,
                    old_value=getattr(previous, name),
                    new_value=getattr(stored, name),
                    batch=batch,
                )

        if incremental:
            await context.repos.settlement_payments.add(
                SettlementPayment(
                    settlement_id=stored.id,
                    amount=amount,
                    paid_by=actor.user_id,
                    paid_at=now,
                    notes=notes,
                ),
                batch=batch,
            )

        if became_settled:
            await context.audit.log_settle(stored.id, actor.user_id, batch=batch)
            if entry.submitted_by is not None:
                await context.repos.notifications.add(
                    Notification(
                        user_id=entry.submitted_by,
                        type=NotificationType.SETTLEMENT_COMPLETE,
                        title="Settlement complete",
                        message=(
                            f"Sales entry {entry.id} dated {entry.date.isoformat()} "
                            f"is fully settled ({stored.settled_amount} of {stored.expected_amount})."
                        ),
                        related_entity_type=EntityType.SETTLEMENT,
                        related_entity_id=stored.id,
                    ),
                    batch=batch,
                )

    log.info(
        "Settlement %d for sales entry %d: expected=%s settled=%s remaining=%s settled_flag=%s",
        stored.id,
        sales_entry_id,
        stored.expected_amount,
        stored.settled_amount,
        stored.remaining_balance,
        stored.is_settled,
    )
    return stored


async def record_settlement(
    context: RuntimeContext,
    sales_entry_id: int,
    settled_amount: Any,
    *,
    notes: Optional[str] = None,
) -> Settlement:
    """Reconcile a sales entry against the cash actually received.

    The first call creates the settlement with an expected amount computed
    from the configured price tiers; later calls replace the settled amount
    and keep the original expected amount. ``settled_at`` is stamped only when
    the settlement transitions into the settled state, which also writes a
    ``settlement_complete`` notification for the entry's submitter. When the
    amount drops below the expected amount again ``is_settled`` follows, and
    ``settled_at`` is cleared only if ``ReopenOnUnderpayment`` is enabled.

    The read of the sales entry and the write of the settlement happen under
    the sales entry's lock.

    Args:
        context (RuntimeContext): Runtime context with a signed-in supervisor.
        sales_entry_id (int): Key of the sales entry being reconciled.
        settled_amount (Any): Total amount received so far; a ``Decimal``,
            number or numeric string.
        notes (str | None): Optional remarks stored on the settlement.

    Returns:
        Settlement: The created or updated settlement.

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
        InvalidAmount: If ``settled_amount`` is negative or not a finite number.
        NotFound: If the sales entry does not exist.
        InvariantViolation: If the entry already has more than one settlement.
    """

    actor = require_actor(context, "record settlements")
    require_supervisor(actor, "record settlements", entity=EntityType.SALES_ENTRY.value, entity_id=sales_entry_id)
    amount = parse_amount(settled_amount, "settled_amount")

    async with context.store.locked(CollectionName.SALES_ENTRIES.value, sales_entry_id):
        return await _write_settlement(
            context,
            actor,
            sales_entry_id,
            amount,
            notes=notes,
            incremental=False,
        )


async def record_settlement_payment(
    context: RuntimeContext,
    sales_entry_id: int,
    amount: Any,
    *,
    notes: Optional[str] = None,
) -> Tuple[Settlement, List[SettlementPayment]]:
    """Apply an incremental payment towards a sales entry's settlement.

    The payment must be positive and may not exceed the remaining balance.
    A ``SettlementPayment`` row is written in the same batch as the settlement
    change.

    Returns:
        tuple[Settlement, list[SettlementPayment]]: The updated settlement and
            its full payment history, oldest first.

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
        InvalidAmount: If ``amount`` is not positive or would overpay.
        NotFound: If the sales entry does not exist.
        InvariantViolation: If the entry already has more than one settlement.
    """

    actor = require_actor(context, "record settlement payments")
    require_supervisor(actor, "record settlement payments", entity=EntityType.SALES_ENTRY.value, entity_id=sales_entry_id)
    payment = parse_amount(amount, "amount")
    if payment <= 0:
        log.error("Settlement payment must be positive, got %s", payment)
        raise InvalidAmount("amount", amount, "Payment amount must be greater than zero")

    async with context.store.locked(CollectionName.SALES_ENTRIES.value, sales_entry_id):
        settlement = await _write_settlement(
            context,
            actor,
            sales_entry_id,
            payment,
            notes=notes,
            incremental=True,
        )
    history = await context.repos.settlement_payments.list_by_settlement(settlement.id)
    return settlement, history


async def get_settlement_for_sale(context: RuntimeContext, sales_entry_id: int) -> Optional[Settlement]:
    return await _load_single_settlement(context, sales_entry_id)


async def list_settlement_payments(context: RuntimeContext, settlement_id: int) -> List[SettlementPayment]:
    return await context.repos.settlement_payments.list_by_settlement(settlement_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def list_sales_entries(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[SalesEntry]:
    """Return sales entries newest first, optionally within ``[start, end]``."""

    if start is None and end is None:
        return await context.repos.sales_entries.list_all()
    return await context.repos.sales_entries.list_by_date_range(start or date.min, end or date.max)


async def list_settlements(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Settlement]:
    if start is None and end is None:
        return await context.repos.settlements.list_all()
    return await context.repos.settlements.list_by_date_range(start or date.min, end or date.max)


async def list_recent_stock_entries(context: RuntimeContext, today: Optional[date] = None) -> List[StockEntry]:
    """Return the stock entries visible to the acting user.

    Field staff only see their own entries dated within the trailing window
    ``today - StockEntryWindowDays <= date <= today``. Supervisors see every
    entry in the same window.

    Raises:
        Unauthenticated: If nobody is signed in.
    """

    actor = require_actor(context, "list stock entries")
    today = today or repositories.utcnow().date()
    start = today - timedelta(days=context.settings.stock_entry_window_days)
    if actor.is_supervisor:
        entries = await context.repos.stock_entries.list_by_date_range(start, today)
    else:
        own = await context.repos.stock_entries.list_by_submitter(actor.user_id)
        entries = [entry for entry in own if start <= entry.date <= today]
    log.debug("User %d sees %d stock entries since %s", actor.user_id, len(entries), start)
    return entries


async def list_audit_records(
    context: RuntimeContext,
    entity_type: Optional[EntityType] = None,
    entity_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[AuditRecord]:
    """Return audit records newest first; restricted to supervisors.

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
    """

    actor = require_actor(context, "read the audit trail")
    require_supervisor(actor, "read the audit trail")
    return await context.audit.list_audit_records(entity_type, entity_id, start, end)


# ---------------------------------------------------------------------------
# Users and notifications
# ---------------------------------------------------------------------------


async def create_user_account(context: RuntimeContext, command: UserAccountCommand) -> UserAccount:
    """Create a login account and its ``create`` audit record.

    Raises:
        Unauthenticated: If nobody is signed in.
        PermissionDenied: If the actor is not a manager or director.
        ConstraintViolation: If the phone number is already registered.
    """

    actor = require_actor(context, "create user accounts")
    require_supervisor(actor, "create user accounts", entity=EntityType.USER_ACCOUNT.value)
    account = UserAccount(
        role=UserRole(command.role),
        name=command.name,
        phone=command.phone,
        email=command.email,
        password=command.password,
        pin=command.pin,
        two_factor_enabled=command.two_factor_enabled,
    )
    async with context.store.batch() as batch:
        stored = await context.repos.user_accounts.add(account, batch=batch)
        await context.audit.log_create(EntityType.USER_ACCOUNT, stored.id, actor.user_id, batch=batch)

    log.info("Created %s account %d (%s)", stored.role.value, stored.id, stored.name)
    return stored


async def get_user_by_phone(context: RuntimeContext, phone: str) -> Optional[UserAccount]:
    return await context.repos.user_accounts.get_by_phone(phone)


async def sign_in_user(context: RuntimeContext, user_id: int) -> Actor:
    """Resolve ``user_id`` into an :class:`Actor` and sign it in.

    ``last_login`` is stamped by the ledger itself and is not an audited
    field, so signing in writes no audit record.

    Raises:
        NotFound: If the account does not exist.
        PermissionDenied: If the account is deactivated.
    """

    account = await context.repos.user_accounts.get(user_id)
    if not account.is_active:
        log.warning("Inactive account %d attempted to sign in", user_id)
        raise PermissionDenied("sign in", account.role, entity=EntityType.USER_ACCOUNT.value, entity_id=user_id)
    actor = Actor(user_id=user_id, role=account.role)
    context.session.sign_in(actor)
    await context.repos.user_accounts.update(user_id, UserAccountPatch(last_login=repositories.utcnow()))
    return actor


async def list_notifications(context: RuntimeContext, *, unread_only: bool = False) -> List[Notification]:
    """Return the acting user's notifications, newest first."""

    actor = require_actor(context, "read notifications")
    return await context.repos.notifications.list_for_user(
        actor.user_id,
        is_read=False if unread_only else None,
    )


async def mark_notification_read(context: RuntimeContext, notification_id: int) -> Notification:
    """Flag one of the acting user's notifications as read.

    Raises:
        Unauthenticated: If nobody is signed in.
        NotFound: If the notification does not exist.
        PermissionDenied: If the notification belongs to someone else.
    """

    actor = require_actor(context, "read notifications")
    notification = await context.repos.notifications.get(notification_id)
    if notification.user_id != actor.user_id:
        log.warning("User %d tried to read notification %d of user %d", actor.user_id, notification_id, notification.user_id)
        raise PermissionDenied(
            "read other users' notifications",
            actor.role,
            entity=CollectionName.NOTIFICATIONS.value,
            entity_id=notification_id,
        )
    return await context.repos.notifications.mark_read(notification_id)


# ---------------------------------------------------------------------------
# Staff profiles
# ---------------------------------------------------------------------------


async def create_staff_profile(context: RuntimeContext, command: StaffProfileCommand) -> StaffProfile:
    """Register an employee.

    Raises:
        ConstraintViolation: If the email is already registered.
    """

    actor = require_actor(context, "manage staff")
    require_supervisor(actor, "manage staff")
    profile = StaffProfile(
        name=command.name,
        email=command.email,
        role=StaffRole(command.role),
        salary_type=SalaryType(command.salary_type),
        phone=command.phone,
        fixed_salary=parse_amount(command.fixed_salary, "fixed_salary") if command.fixed_salary is not None else None,
        commission_rate=parse_amount(command.commission_rate, "commission_rate") if command.commission_rate is not None else None,
    )
    stored = await context.repos.staff_profiles.add(profile)
    log.info("Registered %s %s (%d)", stored.role.value, stored.name, stored.id)
    return stored


async def update_staff_profile(context: RuntimeContext, staff_id: int, patch: StaffProfilePatch) -> StaffProfile:
    actor = require_actor(context, "manage staff")
    require_supervisor(actor, "manage staff")
    return await context.repos.staff_profiles.update(staff_id, patch)


async def delete_staff_profile(context: RuntimeContext, staff_id: int) -> None:
    actor = require_actor(context, "manage staff")
    require_supervisor(actor, "manage staff")
    await context.repos.staff_profiles.delete(staff_id)


async def list_staff(context: RuntimeContext, role: Optional[StaffRole] = None) -> List[StaffProfile]:
    if role is None:
        return await context.repos.staff_profiles.list_all()
    return await context.repos.staff_profiles.list_by_role(StaffRole(role))


__all__ = [
    "RuntimeContext",
    "SalesEntryCommand",
    "StockEntryCommand",
    "UserAccountCommand",
    "StaffProfileCommand",
    "load_runtime_context",
    "close_runtime_context",
    "ensure_schema_version",
    "parse_amount",
    "compute_expected_amount",
    "create_sales_entry",
    "create_stock_entry",
    "update_sales_entry",
    "update_stock_entry",
    "update_user_account",
    "record_settlement",
    "record_settlement_payment",
    "get_settlement_for_sale",
    "list_settlement_payments",
    "list_sales_entries",
    "list_settlements",
    "list_recent_stock_entries",
    "list_audit_records",
    "create_user_account",
    "get_user_by_phone",
    "sign_in_user",
    "list_notifications",
    "mark_notification_read",
    "create_staff_profile",
    "update_staff_profile",
    "delete_staff_profile",
    "list_staff",
]
