"""Data access helpers for the reconciliation ledger workbook.

This module provides the low-level helpers the record store is built on. It
knows nothing about collections, indices or entities.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: creating, opening and persisting the Excel file.
3. Payload codec: turning record mappings into worksheet text and back.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    DEFAULT_PRICE_TIER1,
    DEFAULT_PRICE_TIER2,
    DEFAULT_STOCK_ENTRY_WINDOW_DAYS,
)


CONFIG_FILE_NAME = "config.ini"
META_SHEET = "_Meta"
INDEX_SHEET = "_Indices"
META_COLUMNS: Sequence[str] = ("Name", "Value")
INDEX_COLUMNS: Sequence[str] = ("Collection", "Index", "KeyPath", "Unique", "Version")
COLLECTION_COLUMNS: Sequence[str] = ("Key", "Payload")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: int
    autosave: bool = True
    price_tier1: Decimal = DEFAULT_PRICE_TIER1
    price_tier2: Decimal = DEFAULT_PRICE_TIER2
    reopen_on_underpayment: bool = False
    stock_entry_window_days: int = DEFAULT_STOCK_ENTRY_WINDOW_DAYS
    director_email: Optional[str] = None
    director_name: str = "Director"


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the ledger.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of individual entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are required. The
    pricing, reconciliation, visibility and defaults sections are optional and
    fall back to the package defaults. Relative data file paths are anchored
    to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.getint("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    price_tier1 = Decimal(parser.get("Pricing", "PriceTier1", fallback=str(DEFAULT_PRICE_TIER1)))
    price_tier2 = Decimal(parser.get("Pricing", "PriceTier2", fallback=str(DEFAULT_PRICE_TIER2)))

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        autosave=parser.getboolean("System", "Autosave", fallback=True),
        price_tier1=price_tier1,
        price_tier2=price_tier2,
        reopen_on_underpayment=parser.getboolean(
            "Reconciliation", "ReopenOnUnderpayment", fallback=False),
        stock_entry_window_days=parser.getint(
            "Visibility", "StockEntryWindowDays", fallback=DEFAULT_STOCK_ENTRY_WINDOW_DAYS),
        director_email=parser.get("Defaults", "DirectorEmail", fallback=None),
        director_name=parser.get("Defaults", "DirectorName", fallback="Director"),
    )


def new_workbook() -> Workbook:
    """Create an empty workbook holding only the bookkeeping sheets."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    ensure_sheet(workbook, META_SHEET, META_COLUMNS)
    ensure_sheet(workbook, INDEX_SHEET, INDEX_COLUMNS)
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    ensure_sheet(wb, META_SHEET, META_COLUMNS)
    ensure_sheet(wb, INDEX_SHEET, INDEX_COLUMNS)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def ensure_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]) -> Worksheet:
    """Return ``sheet_name``, creating it with a bold header row if missing."""

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]

    worksheet = workbook.create_sheet(title=sheet_name)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    log.debug("Created worksheet '%s'", sheet_name)
    return worksheet


def iter_rows(sheet: Worksheet) -> Iterator[tuple[int, tuple[Any, ...]]]:
    """Yield ``(row_index, values)`` for every non-empty data row.

    The header row and fully empty rows are skipped. Row indices are the
    1-based Excel row numbers.
    """

    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            yield row_idx, raw


def read_meta(workbook: Workbook) -> dict[str, Any]:
    """Return the ``_Meta`` sheet as a ``Name -> Value`` mapping."""

    return {str(row[0]): row[1] for _, row in iter_rows(workbook[META_SHEET])}


def write_meta(workbook: Workbook, name: str, value: Any) -> None:
    """Insert or replace a single ``_Meta`` entry."""

    sheet = workbook[META_SHEET]
    for row_idx, row in iter_rows(sheet):
        if row[0] == name:
            sheet.cell(row=row_idx, column=2, value=value)
            return
    sheet.append([name, value])


def read_index_rows(workbook: Workbook) -> list[dict[str, Any]]:
    """Return the declared indices recorded in the ``_Indices`` sheet."""

    rows = []
    for _, row in iter_rows(workbook[INDEX_SHEET]):
        collection, index, key_path, unique, version = (tuple(row) + (None,) * 5)[:5]
        rows.append(
            {
                "collection": str(collection),
                "index": str(index),
                "key_path": str(key_path),
                "unique": bool(unique),
                "version": int(version) if version is not None else None,
            }
        )
    return rows


def append_index_row(workbook: Workbook, *, collection: str, index: str, key_path: str, unique: bool, version: int) -> None:
    """Record a newly created index in the ``_Indices`` sheet."""

    workbook[INDEX_SHEET].append([collection, index, key_path, unique, version])


def to_storable(value: Any) -> Any:
    """Convert a Python value into its JSON-compatible stored form.

    Dates become ``YYYY-MM-DD`` strings, datetimes ISO-8601 strings,
    :class:`~decimal.Decimal` values strings (to preserve precision) and
    enumerations their ``value``.
    """

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storable(v) for v in value]
    return value


def encode_payload(record: Mapping[str, Any]) -> str:
    """Serialize a record mapping into the text stored in the ``Payload`` cell."""

    return json.dumps(to_storable(record), sort_keys=True, separators=(",", ":"))


def decode_payload(text: Optional[str]) -> dict[str, Any]:
    """Parse a ``Payload`` cell back into a record mapping.

    Raises:
        ValueError: If the cell does not hold a JSON object.
    """

    if text is None:
        return {}
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError(f"Stored payload is not an object: {text!r}")
    return payload
