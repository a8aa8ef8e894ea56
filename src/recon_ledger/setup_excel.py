"""Utility for initializing the reconciliation ledger workbook.

The module doubles as a script (``recon-ledger-setup``) and as a library used
by tests or other tooling. Running it against an existing workbook is safe:
the store is opened additively, so missing collections and indices are
created and existing records are left alone.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import data_manager, log
from .audit import AuditLedger
from .constants import EntityType, UserRole
from .models import UserAccount
from .record_store import RecordStore
from .repositories import UserAccountRepository
from .schema import build_schema

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


async def seed_director(store: RecordStore, settings: data_manager.ConfigSettings) -> Optional[UserAccount]:
    """Create the default director account unless a director already exists.

    Returns:
        UserAccount | None: The new account, or ``None`` when nothing was
            seeded.
    """

    accounts = UserAccountRepository(store)
    if await accounts.list_by_role(UserRole.DIRECTOR):
        log.debug("Director account already present; skipping seed")
        return None

    audit = AuditLedger(store)
    async with store.batch() as batch:
        director = await accounts.add(
            UserAccount(
                role=UserRole.DIRECTOR,
                name=settings.director_name,
                email=settings.director_email,
            ),
            batch=batch,
        )
        await audit.log_create(EntityType.USER_ACCOUNT, director.id, None, batch=batch)

    log.info("Seeded director account %d (%s)", director.id, director.name)
    return director


async def initialize_store(config_path: Path, *, force: bool = False) -> Path:
    """Create or upgrade the workbook named by ``config_path``.

    Args:
        config_path (Path): Location of ``config.ini``.
        force (bool): Discard an existing workbook and start from scratch.

    Returns:
        Path: Location of the initialized workbook.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        KeyError: If required configuration entries are missing.
        SchemaError: If the workbook is newer than the configured schema.
    """

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)

    if force and settings.data_file.exists():
        log.warning("Removing existing workbook '%s'", settings.data_file)
        settings.data_file.unlink()

    store = await RecordStore.open(
        build_schema(settings.schema_version),
        settings.data_file,
        autosave=True,
    )
    try:
        await seed_director(store, settings)
    finally:
        await store.close()
    return settings.data_file


def run_from_config(config_path: Path, *, force: bool = False) -> Path:
    """Synchronous wrapper around :func:`initialize_store`."""

    return asyncio.run(initialize_store(config_path, force=force))


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the reconciliation ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Delete the existing workbook and create a fresh one.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Reconciliation Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, force=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1
    except Exception as exc:
        log.error("Setup failed: %s", exc)
        print(f"\n[ERROR] {exc}")
        return 1

    print(f"\n[SUCCESS] Ledger workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
