"""Tests for the append-only audit ledger."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from recon_ledger.audit import MASK, AuditLedger, audit_text
from recon_ledger.constants import AuditAction, EntityType, UserRole


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        (UserRole.MANAGER, "manager"),
        (True, "true"),
        (False, "false"),
        (date(2024, 3, 1), "2024-03-01"),
        (datetime(2024, 3, 1, 8, 30, tzinfo=UTC), "2024-03-01T08:30:00+00:00"),
        (Decimal("1850.00"), "1850.00"),
        (12, "12"),
    ],
)
def test_audit_text_renders_values(value, expected):
    assert audit_text(value) == expected


def test_log_change_stores_text_values_and_timestamp(open_store, clock):
    async def scenario():
        ledger = AuditLedger(await open_store())
        return await ledger.log_change(
            EntityType.SALES_ENTRY,
            3,
            AuditAction.UPDATE,
            1,
            field="bags_at_price1",
            old_value=10,
            new_value=12,
            reason="miscount",
        )

    record = asyncio.run(scenario())

    assert record.id == 1
    assert (record.old_value, record.new_value) == ("10", "12")
    assert record.changed_at == datetime(2024, 3, 10, 9, 0, tzinfo=UTC)
    assert record.reason == "miscount"


@pytest.mark.parametrize("field", ["password", "pin"])
def test_credentials_are_masked(open_store, clock, field):
    async def scenario():
        ledger = AuditLedger(await open_store())
        changed = await ledger.log_change(
            EntityType.USER_ACCOUNT, 2, AuditAction.UPDATE, 1, field=field, old_value="1234", new_value="9876"
        )
        first_set = await ledger.log_change(
            EntityType.USER_ACCOUNT, 2, AuditAction.UPDATE, 1, field=field, old_value=None, new_value="9876"
        )
        return changed, first_set

    changed, first_set = asyncio.run(scenario())

    assert (changed.old_value, changed.new_value) == (MASK, MASK)
    assert (first_set.old_value, first_set.new_value) == (None, MASK)


def test_action_helpers_record_their_action(open_store, clock):
    async def scenario():
        ledger = AuditLedger(await open_store())
        return [
            await ledger.log_create(EntityType.STOCK_ENTRY, 1, 5),
            await ledger.log_submit(EntityType.STOCK_ENTRY, 1, 5),
            await ledger.log_settle(4, 1),
            await ledger.log_delete(EntityType.USER_ACCOUNT, 9, 1, reason="left"),
        ]

    records = asyncio.run(scenario())

    assert [record.action for record in records] == [
        AuditAction.CREATE,
        AuditAction.SUBMIT,
        AuditAction.SETTLE,
        AuditAction.DELETE,
    ]
    assert records[2].entity_type is EntityType.SETTLEMENT
    assert records[3].reason == "left"


def test_batched_audit_is_only_visible_after_commit(open_store, clock):
    async def scenario():
        store = await open_store()
        ledger = AuditLedger(store)
        with pytest.raises(RuntimeError):
            async with store.batch() as batch:
                await ledger.log_create(EntityType.SALES_ENTRY, 1, 1, batch=batch)
                raise RuntimeError("abort")
        return await ledger.list_audit_records()

    assert asyncio.run(scenario()) == []


def test_list_audit_records_filters_and_orders(open_store, clock):
    async def scenario():
        ledger = AuditLedger(await open_store())
        await ledger.log_create(EntityType.SALES_ENTRY, 1, 1)
        await ledger.log_submit(EntityType.SALES_ENTRY, 1, 1)
        clock.advance(days=1)
        await ledger.log_create(EntityType.STOCK_ENTRY, 1, 2)
        clock.advance(days=1)
        await ledger.log_change(EntityType.SALES_ENTRY, 2, AuditAction.UPDATE, 1, field="notes", new_value="x")
        return (
            await ledger.list_audit_records(),
            await ledger.list_audit_records(EntityType.SALES_ENTRY, 1),
            await ledger.list_audit_records(EntityType.SALES_ENTRY),
            await ledger.list_audit_records(entity_id=1),
            await ledger.list_audit_records(start=date(2024, 3, 11), end=date(2024, 3, 11)),
            await ledger.list_audit_records(start=datetime(2024, 3, 11, 12, tzinfo=UTC)),
        )

    everything, one_sale, sales, entity_one, one_day, since = asyncio.run(scenario())

    assert [record.id for record in everything] == [4, 3, 1, 2]
    assert [record.action for record in one_sale] == [AuditAction.CREATE, AuditAction.SUBMIT]
    assert [record.id for record in sales] == [4, 1, 2]
    assert [record.id for record in entity_one] == [3, 1, 2]
    assert [record.id for record in one_day] == [3]
    assert [record.id for record in since] == [4]
