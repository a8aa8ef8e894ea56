"""Enumerations shared across the reconciliation ledger modules.

Centralises domain constants so that the record store, the repositories, the
reconciliation engine and the command line rely on a single source of truth
for collection names and enumerated field values.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Highest schema version declared in ``schema.py``.
SCHEMA_VERSION = 2

DEFAULT_PRICE_TIER1 = Decimal("250")
DEFAULT_PRICE_TIER2 = Decimal("270")
DEFAULT_STOCK_ENTRY_WINDOW_DAYS = 2


class CollectionName(str, Enum):
    """Enumerate the collections (worksheets) managed by the record store."""

    SALES_ENTRIES = "sales_entries"
    STOCK_ENTRIES = "stock_entries"
    SETTLEMENTS = "settlements"
    SETTLEMENT_PAYMENTS = "settlement_payments"
    AUDIT_RECORDS = "audit_records"
    NOTIFICATIONS = "notifications"
    USER_ACCOUNTS = "user_accounts"
    STAFF_PROFILES = "staff_profiles"


class SaleType(str, Enum):
    """Enumerate the channels a sales entry can be recorded for."""

    DRIVER = "driver"
    GENERAL = "general"
    MINI_STORE = "mini_store"


class StockEntryType(str, Enum):
    """Enumerate the stock movements a storekeeper records."""

    DRIVER_PICKUP = "driver_pickup"
    GENERAL_SALES = "general_sales"
    PACKER_PRODUCTION = "packer_production"
    MINISTORE_PICKUP = "ministore_pickup"


class EntityType(str, Enum):
    """Enumerate the audit-sensitive entity kinds."""

    SALES_ENTRY = "sales_entry"
    STOCK_ENTRY = "stock_entry"
    SETTLEMENT = "settlement"
    USER_ACCOUNT = "user_account"


class AuditAction(str, Enum):
    """Enumerate the actions an audit record can describe."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SUBMIT = "submit"
    SETTLE = "settle"


class NotificationType(str, Enum):
    """Enumerate notification kinds delivered to users."""

    SETTLEMENT_COMPLETE = "settlement_complete"
    ENTRY_UPDATED = "entry_updated"
    ACCOUNT_MODIFIED = "account_modified"


class UserRole(str, Enum):
    """Enumerate the roles a user account can hold."""

    DIRECTOR = "director"
    MANAGER = "manager"
    RECEPTIONIST = "receptionist"
    STOREKEEPER = "storekeeper"


class StaffRole(str, Enum):
    """Enumerate the job roles of staff profiles."""

    DRIVER = "driver"
    PACKER = "packer"
    MANAGER = "manager"
    GENERAL = "general"


class SalaryType(str, Enum):
    """Enumerate how a staff member is paid."""

    FIXED = "fixed"
    COMMISSION = "commission"
    BOTH = "both"


# Roles allowed to run audited updates and reconcile settlements.
SUPERVISORY_ROLES: frozenset[UserRole] = frozenset({UserRole.DIRECTOR, UserRole.MANAGER})


__all__ = [
    "SCHEMA_VERSION",
    "DEFAULT_PRICE_TIER1",
    "DEFAULT_PRICE_TIER2",
    "DEFAULT_STOCK_ENTRY_WINDOW_DAYS",
    "CollectionName",
    "SaleType",
    "StockEntryType",
    "EntityType",
    "AuditAction",
    "NotificationType",
    "UserRole",
    "StaffRole",
    "SalaryType",
    "SUPERVISORY_ROLES",
]
