"""Shared pytest fixtures and utilities for reconciliation ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from recon_ledger import core_logic, data_manager, repositories  # noqa: E402
from recon_ledger.constants import SCHEMA_VERSION, UserRole  # noqa: E402
from recon_ledger.models import UserAccount  # noqa: E402
from recon_ledger.record_store import RecordStore  # noqa: E402
from recon_ledger.schema import build_schema  # noqa: E402
from recon_ledger.session import Actor, Session  # noqa: E402

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n"
    "Autosave = true\n\n"
    "[Pricing]\n"
    "PriceTier1 = {price_tier1}\n"
    "PriceTier2 = {price_tier2}\n\n"
    "[Reconciliation]\n"
    "ReopenOnUnderpayment = {reopen}\n\n"
    "[Defaults]\n"
    "DirectorEmail = director@example.com\n"
    "DirectorName = Test Director\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: int


class Clock:
    """Controllable replacement for :func:`repositories.utcnow`."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config bundles on demand.

    The workbook itself is not created; the store creates it on first open.
    """

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: int = SCHEMA_VERSION,
        price_tier1: str = "250",
        price_tier2: str = "270",
        reopen: bool = False,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = bundle_dir / "ledger.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                price_tier1=price_tier1,
                price_tier2=price_tier2,
                reopen=str(reopen).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Default settings for an in-memory store."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "unused.xlsx",
        schema_version=SCHEMA_VERSION,
    )


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> Clock:
    """Freeze ``repositories.utcnow`` at a known moment."""

    fixed = Clock(datetime(2024, 3, 10, 9, 0, tzinfo=UTC))
    monkeypatch.setattr(repositories, "utcnow", fixed)
    return fixed


@pytest.fixture
def open_store() -> Callable[..., Awaitable[RecordStore]]:
    """Return a coroutine factory opening a store at a schema version.

    Stores must be opened inside the event loop that uses them, so tests call
    the factory from within their ``asyncio.run`` scenario.
    """

    async def _open(data_file: Optional[Path] = None, *, version: int = SCHEMA_VERSION, autosave: bool = True) -> RecordStore:
        return await RecordStore.open(build_schema(version), data_file, autosave=autosave)

    return _open


async def _add_account(
    context: core_logic.RuntimeContext,
    role: UserRole,
    *,
    name: Optional[str] = None,
    phone: Optional[str] = None,
) -> Actor:
    """Insert an account directly through the repository and return its actor."""

    account = await context.repos.user_accounts.add(
        UserAccount(role=role, name=name or role.value.title(), phone=phone)
    )
    return Actor(user_id=account.id, role=role)


@pytest.fixture
def add_account() -> Callable[..., Awaitable[Actor]]:
    """Expose the account helper to tests."""

    return _add_account


@pytest.fixture
def make_context(
    settings: data_manager.ConfigSettings,
    open_store: Callable[..., Awaitable[RecordStore]],
) -> Callable[..., Awaitable[core_logic.RuntimeContext]]:
    """Return a coroutine factory building an in-memory context.

    The context has a director account signed in unless ``signed_in`` is
    ``False``.
    """

    async def _make(*, signed_in: bool = True, **overrides: Any) -> core_logic.RuntimeContext:
        store = await open_store()
        context = core_logic.RuntimeContext(
            settings=replace(settings, **overrides),
            store=store,
            session=Session(),
        )
        director = await _add_account(context, UserRole.DIRECTOR, name="Director")
        if signed_in:
            context.session.sign_in(director)
        return context

    return _make
