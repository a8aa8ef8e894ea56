"""Append-only audit trail for sensitive entities.

Every helper appends a new :class:`~recon_ledger.models.AuditRecord`; nothing
here updates or deletes. Values are stored as text so the trail reads the same
regardless of the field's type, and credentials never reach the trail in
clear text.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from . import log, repositories
from .constants import AuditAction, EntityType
from .models import AuditRecord, to_instant
from .record_store import Batch, RecordStore
from .repositories import AuditRecordRepository


MASKED_FIELDS = frozenset({"password", "pin"})
MASK = "***"


def audit_text(value: Any) -> Optional[str]:
    """Render a field value the way it is kept in the audit trail."""

    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class AuditLedger:
    """Writes and queries the audit trail."""

    def __init__(self, store: RecordStore) -> None:
        self.records = AuditRecordRepository(store)

    async def log_change(
        self,
        entity_type: EntityType,
        entity_id: int,
        action: AuditAction,
        changed_by: Optional[int],
        *,
        field: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        reason: Optional[str] = None,
        batch: Optional[Batch] = None,
    ) -> AuditRecord:
        """Append one audit record.

        Args:
            entity_type (EntityType): Kind of the entity that changed.
            entity_id (int): Key of the entity that changed.
            action (AuditAction): What happened to the entity.
            changed_by (int | None): User id of the actor.
            field (str | None): Changed field, for ``update`` records.
            old_value (Any): Value before the change.
            new_value (Any): Value after the change.
            reason (str | None): Justification supplied by the actor.
            batch (Batch | None): Stage the record into this batch instead of
                committing it on its own.

        Returns:
            AuditRecord: The appended record.
        """

        if field in MASKED_FIELDS:
            old_value = MASK if old_value is not None else None
            new_value = MASK if new_value is not None else None

        record = AuditRecord(
            entity_type=EntityType(entity_type),
            entity_id=entity_id,
            action=AuditAction(action),
            changed_by=changed_by,
            changed_at=repositories.utcnow(),
            field=field,
            old_value=audit_text(old_value),
            new_value=audit_text(new_value),
            reason=reason,
        )
        stored = await self.records.add(record, batch=batch)
        log.debug(
            "Audit %s %s %s %s by %s",
            record.action.value,
            record.entity_type.value,
            entity_id,
            field or "",
            changed_by,
        )
        return stored

    async def log_create(self, entity_type: EntityType, entity_id: int, changed_by: Optional[int], *, batch: Optional[Batch] = None) -> AuditRecord:
        return await self.log_change(entity_type, entity_id, AuditAction.CREATE, changed_by, batch=batch)

    async def log_delete(self, entity_type: EntityType, entity_id: int, changed_by: Optional[int], *, reason: Optional[str] = None, batch: Optional[Batch] = None) -> AuditRecord:
        return await self.log_change(entity_type, entity_id, AuditAction.DELETE, changed_by, reason=reason, batch=batch)

    async def log_submit(self, entity_type: EntityType, entity_id: int, changed_by: Optional[int], *, batch: Optional[Batch] = None) -> AuditRecord:
        return await self.log_change(entity_type, entity_id, AuditAction.SUBMIT, changed_by, batch=batch)

    async def log_settle(self, entity_id: int, changed_by: Optional[int], *, batch: Optional[Batch] = None) -> AuditRecord:
        return await self.log_change(EntityType.SETTLEMENT, entity_id, AuditAction.SETTLE, changed_by, batch=batch)

    async def list_audit_records(
        self,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        """Return audit records newest first, optionally filtered.

        Records sharing a ``changed_at`` stay in the order they were appended.
        ``start`` and ``end`` are inclusive and may be dates or datetimes.
        """

        if entity_type is not None and entity_id is not None:
            records = await self.records.list_by_entity(EntityType(entity_type), entity_id)
        elif entity_type is not None:
            records = await self.records.list_by_entity_type(EntityType(entity_type))
        else:
            records = await self.records.list_all()
            if entity_id is not None:
                records = [record for record in records if record.entity_id == entity_id]

        if start is not None or end is not None:
            lower, upper = self.records._bounds(start or datetime.min, end or datetime.max)
            lower_bound = to_instant(lower)
            upper_bound = to_instant(upper)
            records = [record for record in records if lower_bound <= record.changed_at <= upper_bound]

        return records


__all__ = ["AuditLedger", "audit_text", "MASKED_FIELDS"]
