"""Tests for the workbook initialization script."""

from __future__ import annotations

import asyncio

from recon_ledger import setup_excel
from recon_ledger.constants import AuditAction, UserRole
from recon_ledger.repositories import Repositories


def _snapshot(open_store, path):
    async def scenario():
        store = await open_store(path)
        repos = Repositories.for_store(store)
        return await repos.user_accounts.list_by_role(UserRole.DIRECTOR), await repos.audit_records.list_all()

    return asyncio.run(scenario())


def test_run_from_config_creates_workbook_and_seeds_director(config_factory, open_store):
    bundle = config_factory()

    output = setup_excel.run_from_config(bundle.config_path)
    directors, audits = _snapshot(open_store, bundle.workbook_path)

    assert output == bundle.workbook_path.resolve()
    assert [(account.name, account.email) for account in directors] == [("Test Director", "director@example.com")]
    assert [(record.action, record.changed_by) for record in audits] == [(AuditAction.CREATE, None)]


def test_setup_is_idempotent(config_factory, open_store):
    bundle = config_factory()

    setup_excel.run_from_config(bundle.config_path)
    setup_excel.run_from_config(bundle.config_path)
    directors, audits = _snapshot(open_store, bundle.workbook_path)

    assert len(directors) == 1
    assert len(audits) == 1


def test_force_recreates_workbook(config_factory, open_store):
    bundle = config_factory()
    setup_excel.run_from_config(bundle.config_path)

    async def add_sale():
        store = await open_store(bundle.workbook_path)
        await store.add("sales_entries", {"date": "2024-03-01"})
        await store.close()

    asyncio.run(add_sale())
    setup_excel.run_from_config(bundle.config_path, force=True)

    async def count_sales():
        store = await open_store(bundle.workbook_path)
        return await store.count("sales_entries")

    assert asyncio.run(count_sales()) == 0


def test_parse_args_defaults():
    args = setup_excel.parse_args([])

    assert args.config == "config.ini"
    assert args.force is False


def test_main_reports_success(config_factory, capsys):
    bundle = config_factory()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "nope.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
