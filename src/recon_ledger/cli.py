"""Command-line entry points for the reconciliation ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Each executor is a coroutine; :func:`main` runs
the selected one on a fresh event loop.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import EntityType, SaleType, StockEntryType, UserRole
from .errors import LedgerError
from .models import Entity, SalesEntryPatch, StockEntryPatch


Executor = Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="recon-ledger",
        description="Command-line tools for the reconciliation ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--actor-id",
        type=int,
        default=None,
        help="User account id on whose behalf the command runs.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as entries and settlements."""
    specs = {
        "add-user": register_add_user_command(),
        "sale": register_sale_command(),
        "stock": register_stock_command(),
        "settle": register_settle_command(),
        "pay": register_pay_command(),
        "update-sale": register_update_sale_command(),
        "update-stock": register_update_stock_command(),
        "read-notification": register_read_notification_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "audit": register_audit_command(),
        "notifications": register_notifications_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _spec(name: str, help_text: str, configure: Callable[[argparse.ArgumentParser], None], execute: Executor) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_user_command() -> CommandSpec:
    """Register the parser and executor for ``add-user``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--role", choices=[member.value for member in UserRole], required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--password", default=None)
        parser.add_argument("--pin", default=None)

    return _spec("add-user", "Create a user account.", configure, run_add_user)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default: today).")
        parser.add_argument("--sale-type", choices=[member.value for member in SaleType], required=True)
        parser.add_argument("--bags-price1", type=int, required=True)
        parser.add_argument("--bags-price2", type=int, required=True)
        parser.add_argument("--driver-id", type=int, default=None)
        parser.add_argument("--driver-name", default=None)
        parser.add_argument("--notes", dest="notes", default=None)

    return _spec("sale", "Record a submitted sales entry.", configure, run_sale)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (default: today).")
        parser.add_argument("--entry-type", choices=[member.value for member in StockEntryType], required=True)
        parser.add_argument("--bags", type=int, required=True)
        parser.add_argument("--driver-id", type=int, default=None)
        parser.add_argument("--driver-name", default=None)
        parser.add_argument("--packer-id", type=int, default=None)
        parser.add_argument("--packer-name", default=None)
        parser.add_argument("--notes", dest="notes", default=None)

    return _spec("stock", "Record a submitted stock entry.", configure, run_stock)


def register_settle_command() -> CommandSpec:
    """Register the parser and executor for ``settle``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sales-entry-id", type=int, required=True)
        parser.add_argument("--amount", required=True, help="Total amount received.")
        parser.add_argument("--notes", dest="notes", default=None)

    return _spec("settle", "Reconcile a sales entry against the amount received.", configure, run_settle)


def register_pay_command() -> CommandSpec:
    """Register the parser and executor for ``pay``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sales-entry-id", type=int, required=True)
        parser.add_argument("--amount", required=True, help="Amount of this payment.")
        parser.add_argument("--notes", dest="notes", default=None)

    return _spec("pay", "Apply an incremental payment to a settlement.", configure, run_pay)


def register_update_sale_command() -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--entry-id", type=int, required=True)
        parser.add_argument("--bags-price1", type=int, default=None)
        parser.add_argument("--bags-price2", type=int, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--reason", default=None, help="Why the entry is being corrected.")

    return _spec("update-sale", "Correct a submitted sales entry.", configure, run_update_sale)


def register_update_stock_command() -> CommandSpec:
    """Register the parser and executor for ``update-stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--entry-id", type=int, required=True)
        parser.add_argument("--bags", type=int, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--reason", default=None, help="Why the entry is being corrected.")

    return _spec("update-stock", "Correct a submitted stock entry.", configure, run_update_stock)


def register_read_notification_command() -> CommandSpec:
    """Register the parser and executor for ``read-notification``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--notification-id", type=int, required=True)

    return _spec("read-notification", "Mark a notification as read.", configure, run_read_notification)


def register_audit_command() -> CommandSpec:
    """Register the parser and executor for ``audit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--entity-type", choices=[member.value for member in EntityType], default=None)
        parser.add_argument("--entity-id", type=int, default=None)
        parser.add_argument("--start", type=date.fromisoformat, default=None)
        parser.add_argument("--end", type=date.fromisoformat, default=None)

    return _spec("audit", "Display the audit trail.", configure, run_audit)


def register_notifications_command() -> CommandSpec:
    """Register the parser and executor for ``notifications``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--unread", action="store_true", help="Only show unread notifications.")

    return _spec("notifications", "Display the acting user's notifications.", configure, run_notifications)


async def load_runtime_context(config_path: Optional[Path] = None, actor_id: Optional[int] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and sign the actor in."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = await core_logic.load_runtime_context(target)
    if actor_id is not None:
        try:
            await core_logic.sign_in_user(context, actor_id)
        except Exception:
            await core_logic.close_runtime_context(context)
            raise
    return context


async def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return await spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def format_entity(entity: Entity) -> str:
    """Render an entity as a single ``key=value`` line."""
    record = entity.to_record()
    return " ".join(f"{key}={_display(value)}" for key, value in record.items() if value is not None)


def _display(value: Any) -> str:
    return str(getattr(value, "value", value))


def translate_add_user(args: argparse.Namespace) -> core_logic.UserAccountCommand:
    """Translate CLI args into a user account command object."""
    return core_logic.UserAccountCommand(
        role=UserRole(args.role),
        name=args.name,
        phone=args.phone,
        email=args.email,
        password=args.password,
        pin=args.pin,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SalesEntryCommand:
    """Translate CLI args into a sales entry command object."""
    return core_logic.SalesEntryCommand(
        date=args.date or date.today(),
        sale_type=SaleType(args.sale_type),
        bags_at_price1=args.bags_price1,
        bags_at_price2=args.bags_price2,
        driver_id=args.driver_id,
        driver_name=args.driver_name,
        notes=args.notes,
    )


def translate_stock(args: argparse.Namespace) -> core_logic.StockEntryCommand:
    """Translate CLI args into a stock entry command object."""
    return core_logic.StockEntryCommand(
        date=args.date or date.today(),
        entry_type=StockEntryType(args.entry_type),
        bags_count=args.bags,
        driver_id=args.driver_id,
        driver_name=args.driver_name,
        packer_id=args.packer_id,
        packer_name=args.packer_name,
        notes=args.notes,
    )


def translate_update_sale(args: argparse.Namespace) -> SalesEntryPatch:
    return SalesEntryPatch(
        bags_at_price1=args.bags_price1,
        bags_at_price2=args.bags_price2,
        notes=args.notes,
    )


def translate_update_stock(args: argparse.Namespace) -> StockEntryPatch:
    return StockEntryPatch(bags_count=args.bags, notes=args.notes)


async def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-user workflow in the BLL."""
    account = await core_logic.create_user_account(context, translate_add_user(args))
    print(f"Created user {account.id} ({account.role.value})")
    return 0


async def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales entry workflow via the BLL."""
    entry = await core_logic.create_sales_entry(context, translate_sale(args))
    print(format_entity(entry))
    return 0


async def run_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock entry workflow via the BLL."""
    entry = await core_logic.create_stock_entry(context, translate_stock(args))
    print(format_entity(entry))
    return 0


async def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the BLL."""
    settlement = await core_logic.record_settlement(context, args.sales_entry_id, args.amount, notes=args.notes)
    print(format_entity(settlement))
    return 0


async def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the incremental payment workflow via the BLL."""
    settlement, payments = await core_logic.record_settlement_payment(
        context, args.sales_entry_id, args.amount, notes=args.notes
    )
    print(format_entity(settlement))
    print(f"payments={len(payments)}")
    return 0


async def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audited sales entry update via the BLL."""
    entry = await core_logic.update_sales_entry(context, args.entry_id, translate_update_sale(args), args.reason)
    print(format_entity(entry))
    return 0


async def run_update_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audited stock entry update via the BLL."""
    entry = await core_logic.update_stock_entry(context, args.entry_id, translate_update_stock(args), args.reason)
    print(format_entity(entry))
    return 0


async def run_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the audit trail report."""
    entity_type = EntityType(args.entity_type) if args.entity_type else None
    records = await core_logic.list_audit_records(context, entity_type, args.entity_id, args.start, args.end)
    for record in records:
        print(format_entity(record))
    return 0


async def run_notifications(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the notification listing."""
    for notification in await core_logic.list_notifications(context, unread_only=args.unread):
        print(format_entity(notification))
    return 0


async def run_read_notification(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-as-read workflow."""
    notification = await core_logic.mark_notification_read(context, args.notification_id)
    print(f"Marked notification {notification.id} as read")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


async def run(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Load the context, execute the command and close the store."""
    context = await load_runtime_context(getattr(args, "config", None), getattr(args, "actor_id", None))
    try:
        return await dispatch_command(context, args, command_table)
    finally:
        await core_logic.close_runtime_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        return asyncio.run(run(args, command_table))
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
