"""Exception taxonomy for the reconciliation ledger.

Every error carries structured attributes (``kind``, ``entity``,
``entity_id``, ``field`` and ``value``) so callers can build messages without
parsing strings. Store-level errors (:class:`NotFound`,
:class:`ConstraintViolation`) propagate unchanged through the repositories and
the business logic layer.
"""

from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """Base class for all domain and storage errors raised by the package."""

    kind = "ledger_error"

    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        entity_id: Any = None,
        field: Optional[str] = None,
        value: Any = None,
    ) -> None:
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
        self.field = field
        self.value = value

    def as_dict(self) -> dict[str, Any]:
        """Return the structured detail of the error."""

        return {
            "kind": self.kind,
            "message": str(self),
            "entity": self.entity,
            "entity_id": self.entity_id,
            "field": self.field,
            "value": self.value,
        }


class NotFound(LedgerError):
    """Raised when a key is absent from a collection."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id!r} not found", entity=entity, entity_id=entity_id)


class ConstraintViolation(LedgerError):
    """Raised when a write would duplicate a value in a unique index."""

    kind = "constraint_violation"

    def __init__(self, entity: str, field: str, value: Any, *, entity_id: Any = None) -> None:
        super().__init__(
            f"Unique index '{field}' on {entity} already holds {value!r}",
            entity=entity,
            entity_id=entity_id,
            field=field,
            value=value,
        )


class InvariantViolation(LedgerError):
    """Raised when persisted data breaks a ledger invariant."""

    kind = "invariant_violation"


class ReasonRequired(LedgerError):
    """Raised when an audited update is attempted without a reason."""

    kind = "reason_required"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(
            f"A reason is required to update {entity} {entity_id!r}",
            entity=entity,
            entity_id=entity_id,
            field="reason",
        )


class InvalidAmount(LedgerError):
    """Raised when a monetary amount is negative or not a finite number."""

    kind = "invalid_amount"

    def __init__(self, field: str, value: Any, message: Optional[str] = None) -> None:
        super().__init__(message or f"Invalid amount for {field}: {value!r}", field=field, value=value)


class Unauthenticated(LedgerError):
    """Raised when an operation needs an acting user and none is signed in."""

    kind = "unauthenticated"

    def __init__(self, operation: str) -> None:
        super().__init__(f"An authenticated user is required to {operation}")
        self.operation = operation


class PermissionDenied(LedgerError):
    """Raised when the acting user's role may not perform an operation."""

    kind = "permission_denied"

    def __init__(self, operation: str, role: Any, *, entity: Optional[str] = None, entity_id: Any = None) -> None:
        super().__init__(
            f"Role '{getattr(role, 'value', role)}' may not {operation}",
            entity=entity,
            entity_id=entity_id,
            value=getattr(role, "value", role),
        )
        self.operation = operation


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""

    kind = "business_rule_violation"


class SettlementLocked(BusinessRuleViolation):
    """Raised when a sales entry is edited after its settlement has started."""

    kind = "settlement_locked"

    def __init__(self, entity_id: Any) -> None:
        super().__init__(
            f"sales_entry {entity_id!r} cannot be updated after settlement has started",
            entity="sales_entry",
            entity_id=entity_id,
        )


class SchemaError(LedgerError):
    """Raised when a schema is incompatible with the persisted store."""

    kind = "schema_error"


__all__ = [
    "LedgerError",
    "NotFound",
    "ConstraintViolation",
    "InvariantViolation",
    "ReasonRequired",
    "InvalidAmount",
    "Unauthenticated",
    "PermissionDenied",
    "BusinessRuleViolation",
    "SettlementLocked",
    "SchemaError",
]
