"""Tests for the typed repositories layered over the record store."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from recon_ledger.constants import (
    AuditAction,
    EntityType,
    NotificationType,
    SalaryType,
    SaleType,
    StaffRole,
    StockEntryType,
    UserRole,
)
from recon_ledger.errors import ConstraintViolation, InvariantViolation, NotFound, ReasonRequired
from recon_ledger.models import (
    AuditRecord,
    Notification,
    SalesEntry,
    SalesEntryPatch,
    Settlement,
    SettlementPayment,
    StaffProfile,
    StockEntry,
    UserAccount,
    UserAccountPatch,
)
from recon_ledger.repositories import Repositories, prepare_update


def _sale(day: date, **overrides) -> SalesEntry:
    values = dict(date=day, sale_type=SaleType.DRIVER, bags_at_price1=10, bags_at_price2=5, submitted_by=1)
    values.update(overrides)
    return SalesEntry(**values)


def test_prepare_update_reports_only_real_changes():
    entry = _sale(date(2024, 3, 1), id=4, notes="n")

    merged, changed = prepare_update(entry, SalesEntryPatch(bags_at_price1=10, bags_at_price2=7))

    assert merged.bags_at_price2 == 7
    assert changed == {"bags_at_price2": (5, 7)}
    assert prepare_update(entry, SalesEntryPatch()) == (entry, {})


def test_add_stamps_and_round_trips_entity(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        stored = await repos.sales_entries.add(_sale(date(2024, 3, 1), submitted_at=clock()))
        return stored, await repos.sales_entries.get(stored.id)

    stored, loaded = asyncio.run(scenario())

    assert stored.id == 1
    assert stored.created_at == stored.updated_at == datetime(2024, 3, 10, 9, 0, tzinfo=UTC)
    assert loaded == stored
    assert loaded.sale_type is SaleType.DRIVER
    assert loaded.total_bags == 15


def test_derived_fields_are_persisted(open_store, clock):
    async def scenario():
        store = await open_store()
        repos = Repositories.for_store(store)
        settlement = await repos.settlements.add(
            Settlement(
                date=date(2024, 3, 1),
                sales_entry_id=1,
                expected_amount=Decimal("3850"),
                settled_amount=Decimal("2000"),
            )
        )
        return settlement, await store.get("settlements", settlement.id)

    settlement, raw = asyncio.run(scenario())

    assert settlement.remaining_balance == Decimal("1850")
    assert raw["remaining_balance"] == "1850"
    assert raw["is_settled"] is False
    assert raw["expected_amount"] == "3850"


def test_get_missing_entity_raises_not_found(open_store):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        await repos.settlements.get(12)

    with pytest.raises(NotFound):
        asyncio.run(scenario())


def test_list_all_is_newest_first_and_stable(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        for day in (date(2024, 3, 1), date(2024, 3, 3), date(2024, 3, 1), date(2024, 3, 2)):
            await repos.sales_entries.add(_sale(day))
        return await repos.sales_entries.list_all()

    entries = asyncio.run(scenario())

    assert [(entry.date.day, entry.id) for entry in entries] == [(3, 2), (2, 4), (1, 1), (1, 3)]


def test_list_by_date_range_is_inclusive(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        for day in range(1, 6):
            await repos.sales_entries.add(_sale(date(2024, 3, day)))
        return await repos.sales_entries.list_by_date_range(date(2024, 3, 2), date(2024, 3, 4))

    entries = asyncio.run(scenario())

    assert [entry.date.day for entry in entries] == [4, 3, 2]


def test_list_by_date_range_on_instant_field_covers_whole_days(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        for moment in (
            datetime(2024, 3, 1, 23, 59, tzinfo=UTC),
            datetime(2024, 3, 2, 0, 0, tzinfo=UTC),
            datetime(2024, 3, 2, 18, 30, tzinfo=UTC),
            datetime(2024, 3, 3, 0, 0, tzinfo=UTC),
        ):
            await repos.settlement_payments.add(
                SettlementPayment(settlement_id=1, amount=Decimal("10"), paid_at=moment)
            )
        return await repos.settlement_payments.list_by_date_range(date(2024, 3, 2), date(2024, 3, 2))

    payments = asyncio.run(scenario())

    assert [payment.id for payment in payments] == [3, 2]


def test_update_merges_patch_and_refreshes_updated_at(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        account = await repos.user_accounts.add(UserAccount(role=UserRole.MANAGER, name="M", phone="0801"))
        clock.advance(hours=1)
        unchanged = await repos.user_accounts.update(account.id, UserAccountPatch(name="M"))
        updated = await repos.user_accounts.update(account.id, UserAccountPatch(phone="080-2"))
        return account, unchanged, updated

    account, unchanged, updated = asyncio.run(scenario())

    assert unchanged == account
    assert updated.phone == "0802"
    assert updated.created_at == account.created_at
    assert updated.updated_at == datetime(2024, 3, 10, 10, 0, tzinfo=UTC)


def test_user_lookup_by_phone_ignores_formatting(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        await repos.user_accounts.add(UserAccount(role=UserRole.RECEPTIONIST, name="R", phone="+234 (801) 555-0100"))
        found = await repos.user_accounts.get_by_phone("2348015550100")
        missing = await repos.user_accounts.get_by_phone("  ")
        return found, missing

    found, missing = asyncio.run(scenario())

    assert found is not None and found.name == "R"
    assert missing is None


def test_duplicate_phone_in_any_format_is_rejected(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        await repos.user_accounts.add(UserAccount(role=UserRole.MANAGER, name="A", phone="0801 234"))
        await repos.user_accounts.add(UserAccount(role=UserRole.MANAGER, name="B", phone="0801-234"))

    with pytest.raises(ConstraintViolation):
        asyncio.run(scenario())


def test_staff_profiles_by_email_role_and_delete(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        driver = await repos.staff_profiles.add(
            StaffProfile(name="D", email="d@example.com", role=StaffRole.DRIVER, salary_type=SalaryType.COMMISSION)
        )
        await repos.staff_profiles.add(
            StaffProfile(name="P", email="p@example.com", role=StaffRole.PACKER, salary_type=SalaryType.FIXED)
        )
        by_email = await repos.staff_profiles.get_by_email("d@example.com")
        drivers = await repos.staff_profiles.list_by_role(StaffRole.DRIVER)
        await repos.staff_profiles.delete(driver.id)
        return by_email, drivers, await repos.staff_profiles.list_all()

    by_email, drivers, remaining = asyncio.run(scenario())

    assert by_email is not None and by_email.name == "D"
    assert [profile.name for profile in drivers] == ["D"]
    assert [profile.name for profile in remaining] == ["P"]


def test_unsettled_settlements_and_lookup_by_sale(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        for sale_id, settled in ((1, "100"), (2, "40")):
            await repos.settlements.add(
                Settlement(
                    date=date(2024, 3, sale_id),
                    sales_entry_id=sale_id,
                    expected_amount=Decimal("100"),
                    settled_amount=Decimal(settled),
                )
            )
        return await repos.settlements.list_unsettled(), await repos.settlements.list_by_sales_entry(1)

    unsettled, for_first = asyncio.run(scenario())

    assert [settlement.sales_entry_id for settlement in unsettled] == [2]
    assert [settlement.is_settled for settlement in for_first] == [True]


def test_payments_by_settlement_are_oldest_first(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        later = datetime(2024, 3, 2, tzinfo=UTC)
        earlier = datetime(2024, 3, 1, tzinfo=UTC)
        for moment in (later, earlier, later):
            await repos.settlement_payments.add(SettlementPayment(settlement_id=7, amount=Decimal("1"), paid_at=moment))
        await repos.settlement_payments.add(SettlementPayment(settlement_id=8, amount=Decimal("1"), paid_at=earlier))
        return await repos.settlement_payments.list_by_settlement(7)

    assert [payment.id for payment in asyncio.run(scenario())] == [2, 1, 3]


def test_audit_records_cannot_be_rewritten(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        record = await repos.audit_records.add(
            AuditRecord(
                entity_type=EntityType.SALES_ENTRY,
                entity_id=1,
                action=AuditAction.CREATE,
                changed_by=1,
                changed_at=clock(),
            )
        )
        await repos.audit_records.put(record.evolve(reason="rewrite"))

    with pytest.raises(InvariantViolation):
        asyncio.run(scenario())


def test_notifications_filter_by_user_and_read_flag(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())

        async def notify(user_id: int):
            clock.advance(minutes=1)
            return await repos.notifications.add(
                Notification(user_id=user_id, type=NotificationType.ENTRY_UPDATED, title="t", message="m")
            )

        first = await notify(3)
        second = await notify(3)
        await notify(4)
        await repos.notifications.mark_read(first.id)
        again = await repos.notifications.mark_read(first.id)
        everything = await repos.notifications.list_for_user(3)
        unread = await repos.notifications.list_for_user(3, is_read=False)
        return second, again, everything, unread

    second, again, everything, unread = asyncio.run(scenario())

    assert again.is_read is True
    assert [item.id for item in everything] == [second.id, 1]
    assert [item.id for item in unread] == [second.id]


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_submitted_entry_update_without_reason_is_rejected(open_store, clock, reason):
    async def scenario():
        store = await open_store()
        repos = Repositories.for_store(store)
        entry = await repos.sales_entries.add(_sale(date(2024, 3, 1)))
        with pytest.raises(ReasonRequired):
            await repos.sales_entries.update(entry.id, SalesEntryPatch(bags_at_price1=99), reason=reason)
        return await repos.sales_entries.get(entry.id), await store.count("audit_records")

    stored, audits = asyncio.run(scenario())

    assert stored.bags_at_price1 == 10
    assert audits == 0


def test_submitted_entries_refuse_writes_outside_an_audited_batch(open_store, clock):
    async def scenario():
        store = await open_store()
        repos = Repositories.for_store(store)
        sale = await repos.sales_entries.add(_sale(date(2024, 3, 1)))
        stock = await repos.stock_entries.add(
            StockEntry(date=date(2024, 3, 1), entry_type=StockEntryType.DRIVER_PICKUP, bags_count=40, submitted_by=1)
        )
        with pytest.raises(InvariantViolation):
            await repos.sales_entries.update(sale.id, SalesEntryPatch(bags_at_price1=99), reason="recount")
        with pytest.raises(InvariantViolation):
            await repos.stock_entries.put(stock.evolve(bags_count=1))
        async with store.batch() as batch:
            staged = await repos.sales_entries.put(sale.evolve(notes="batched"), batch=batch)
        return (
            await repos.sales_entries.get(sale.id),
            await repos.stock_entries.get(stock.id),
            staged,
            await store.count("audit_records"),
        )

    sale, stock, staged, audits = asyncio.run(scenario())

    assert sale.bags_at_price1 == 10
    assert sale.notes == staged.notes == "batched"
    assert stock.bags_count == 40
    assert audits == 0


def test_stock_entries_by_submitter(open_store, clock):
    async def scenario():
        repos = Repositories.for_store(await open_store())
        for day, user in ((1, 5), (3, 6), (2, 5)):
            await repos.stock_entries.add(
                StockEntry(date=date(2024, 3, day), entry_type=StockEntryType.DRIVER_PICKUP, bags_count=day, submitted_by=user)
            )
        return await repos.stock_entries.list_by_submitter(5)

    assert [entry.date.day for entry in asyncio.run(scenario())] == [2, 1]
