"""Unit tests documenting the expected behavior of the data access helpers."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from recon_ledger import data_manager
from recon_ledger.constants import DEFAULT_PRICE_TIER1, DEFAULT_PRICE_TIER2, SaleType


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx\nSchemaVersion=2\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    isolated = tmp_path / "isolated"
    isolated.mkdir()
    monkeypatch.chdir(isolated)
    monkeypatch.setattr(data_manager, "CONFIG_FILE_NAME", "definitely-not-present.ini")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "SchemaVersion") == "2"
    assert parser.get("Defaults", "DirectorName") == "Test Director"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.schema_version == 2
    assert settings.director_email == "director@example.com"


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nSchemaVersion = 1\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.price_tier1 == DEFAULT_PRICE_TIER1
    assert settings.price_tier2 == DEFAULT_PRICE_TIER2
    assert settings.autosave is True
    assert settings.reopen_on_underpayment is False
    assert settings.stock_entry_window_days == 2
    assert settings.director_email is None


def test_parse_settings_reads_pricing_and_flags(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = x.xlsx\nSchemaVersion = 2\nAutosave = no\n"
        "[Pricing]\nPriceTier1 = 300.50\n"
        "[Reconciliation]\nReopenOnUnderpayment = yes\n"
        "[Visibility]\nStockEntryWindowDays = 5\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.price_tier1 == Decimal("300.50")
    assert settings.autosave is False
    assert settings.reopen_on_underpayment is True
    assert settings.stock_entry_window_days == 5


def test_parse_settings_requires_system_entries(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\n")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook helpers
# ---------------------------------------------------------------------------


def test_new_workbook_holds_only_bookkeeping_sheets():
    workbook = data_manager.new_workbook()

    assert workbook.sheetnames == [data_manager.META_SHEET, data_manager.INDEX_SHEET]
    header = [cell.value for cell in workbook[data_manager.INDEX_SHEET][1]]
    assert header == list(data_manager.INDEX_COLUMNS)
    assert workbook[data_manager.INDEX_SHEET]["A1"].font.bold


def test_save_and_open_round_trip(tmp_path):
    workbook = data_manager.new_workbook()
    data_manager.write_meta(workbook, "schema_version", 2)
    destination = tmp_path / "nested" / "ledger.xlsx"

    data_manager.save_workbook(workbook, destination)
    reopened = data_manager.open_workbook(destination)

    assert isinstance(reopened, openpyxl.Workbook)
    assert data_manager.read_meta(reopened) == {"schema_version": 2}


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_write_meta_replaces_existing_entry():
    workbook = data_manager.new_workbook()
    data_manager.write_meta(workbook, "next_key:sales_entries", 1)
    data_manager.write_meta(workbook, "next_key:sales_entries", 7)

    assert data_manager.read_meta(workbook) == {"next_key:sales_entries": 7}
    assert workbook[data_manager.META_SHEET].max_row == 2


def test_index_rows_round_trip():
    workbook = data_manager.new_workbook()
    data_manager.append_index_row(
        workbook, collection="user_accounts", index="phone", key_path="phone", unique=True, version=1
    )

    assert data_manager.read_index_rows(workbook) == [
        {"collection": "user_accounts", "index": "phone", "key_path": "phone", "unique": True, "version": 1}
    ]


def test_iter_rows_skips_blank_rows():
    workbook = data_manager.new_workbook()
    sheet = data_manager.ensure_sheet(workbook, "things", data_manager.COLLECTION_COLUMNS)
    sheet.append([1, "{}"])
    sheet.cell(row=4, column=1, value=3)
    sheet.cell(row=4, column=2, value="{}")

    assert [index for index, _ in data_manager.iter_rows(sheet)] == [2, 4]


# ---------------------------------------------------------------------------
# Payload codec
# ---------------------------------------------------------------------------


def test_to_storable_converts_domain_values():
    stored = data_manager.to_storable(
        {
            "day": date(2024, 1, 2),
            "at": datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC),
            "amount": Decimal("3850.00"),
            "kind": SaleType.DRIVER,
            "nested": [Decimal("1.5")],
        }
    )

    assert stored == {
        "day": "2024-01-02",
        "at": "2024-01-02T03:04:05+00:00",
        "amount": "3850.00",
        "kind": "driver",
        "nested": ["1.5"],
    }


def test_encode_payload_is_stable_json():
    assert data_manager.encode_payload({"b": 1, "a": True}) == '{"a":true,"b":1}'


def test_decode_payload_rejects_non_objects():
    with pytest.raises(ValueError):
        data_manager.decode_payload("[1, 2]")
