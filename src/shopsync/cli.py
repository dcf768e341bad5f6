"""Command-line entry points for shopsync.

All orchestration in this module is limited to argparse wiring, calling the
business layer, and printing its results. Keeping the CLI thin means chat
bots, schedulers or scripts can drive :mod:`shopsync.core_logic` directly with
the same behaviour.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .errors import ConsistencyError, RemoteError, RestoreError, ValidationError
from .sync_engine import SyncProgress


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shopsync-cli",
        description="Keep a local stock cache in step with the remote catalog and manage withdrawals.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini above the working directory).",
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
    """Declare commands that change the cache, the ledger or the remote store."""
    specs = {
        "sync": register_sync_command(subparsers),
        "withdraw": register_withdraw_command(subparsers),
        "restore": register_restore_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "delete-stock": register_delete_stock_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Rebuild the stock cache from the remote catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quiet", action="store_true", help="Do not print progress lines.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_withdraw_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``withdraw``."""
    name = "withdraw"
    help_text = "Take the oldest deliverables from a variant and record them in the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--variant-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_withdraw)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Put back the deliverables of the most recent withdrawals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--count", type=int, default=1, help="Number of withdrawals to undo (default 1).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    name = "add-stock"
    help_text = "Append copies of one deliverable to the end of a variant's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--variant-id", required=True)
        parser.add_argument("--item", required=True, help="Deliverable text, one line.")
        parser.add_argument("--quantity", type=int, default=1, help="Copies to add (default 1).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_stock)


def register_delete_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-stock``."""
    name = "delete-stock"
    help_text = "Permanently delete the newest deliverables of a variant."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--variant-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_stock)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display cached stock, or the live deliverable count of one variant."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id")
        parser.add_argument("--variant-id")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display outstanding withdrawals, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
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
    return spec.execute(context, args)


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


def print_progress(progress: SyncProgress) -> None:
    print(
        f"Sync {progress.percentage}% ({progress.processed}/{progress.total}) "
        f"after {progress.elapsed_seconds:.0f}s"
    )


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a full sync and print its summary."""
    report = core_logic.sync(context, None if getattr(args, "quiet", False) else print_progress)
    print(
        f"Synced {report.products} products and {report.variants} variants "
        f"({report.discovered} from invoices, {report.empty_variants} empty, "
        f"{len(report.failures)} failed) in {report.elapsed_seconds:.0f}s"
    )
    for failure in report.failures:
        print(f"  failed {failure.product_id}/{failure.variant_id}: {failure.reason}")
    return 0


def run_withdraw(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a withdrawal and print the taken deliverables, one per line."""
    result = core_logic.withdraw(context, args.product_id, args.variant_id, args.quantity)
    for item in result.items:
        print(item)
    if not result.cache_updated:
        log.warning("Stock cache was not updated; run a sync")
    if not result.ledger_recorded:
        log.warning("This withdrawal is not in the ledger and cannot be restored")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a restore and print what was put back."""
    restored = core_logic.restore(context, args.count)
    for record in restored:
        print(
            f"Restored {len(record.removed_items)} items to "
            f"{record.product_name} / {record.variant_name} (withdrawn {record.timestamp})"
        )
    return 0


def print_adjustment(verb: str, product_id: str, variant_id: str, adjustment: core_logic.StockAdjustment) -> None:
    print(
        f"{verb} {len(adjustment.items)} items on {product_id}/{variant_id}: "
        f"{adjustment.previous} -> {adjustment.current}"
    )
    if not adjustment.cache_updated:
        log.warning("Stock cache was not updated; run a sync")


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    adjustment = core_logic.add_stock(context, args.product_id, args.variant_id, args.item, args.quantity)
    print_adjustment("Added", args.product_id, args.variant_id, adjustment)
    return 0


def run_delete_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Delete deliverables and print them, since they cannot be restored."""
    adjustment = core_logic.delete_stock(context, args.product_id, args.variant_id, args.quantity)
    print_adjustment("Deleted", args.product_id, args.variant_id, adjustment)
    for item in adjustment.items:
        print(f"  {item}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print cached stock, or the authoritative count of one variant."""
    if args.product_id is not None or args.variant_id is not None:
        if args.product_id is None or args.variant_id is None:
            raise ValidationError("--product-id and --variant-id must be given together")
        items = core_logic.inspect_variant(context, args.product_id, args.variant_id)
        print(f"{args.product_id}/{args.variant_id}: {len(items)} deliverables available")
        return 0

    for product_id, entry in sorted(core_logic.list_cached_stock(context).items()):
        print(f"{entry.product_name} [{product_id}]")
        for variant_id, variant in entry.variants.items():
            print(f"  {variant.variant_name} [{variant_id}]: {variant.stock}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print outstanding ledger records, newest first."""
    for record in core_logic.list_history(context, args.limit):
        print(
            f"{record.timestamp}  {record.product_name} / {record.variant_name}  "
            f"{len(record.removed_items)} items"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 2
    if isinstance(error, (FileNotFoundError, KeyError)):
        log.error("Configuration problem: %s", error)
        return 3
    if isinstance(error, ConsistencyError):
        log.error("%s (cached %d, remote %d)", error, error.cached_stock, error.authoritative_stock)
        return 4
    if isinstance(error, RestoreError):
        log.error("%s; %d records need manual reconciliation", error, len(error.abandoned))
        return 5
    if isinstance(error, RemoteError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
    except Exception as error:
        return handle_cli_error(error)
    try:
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        core_logic.close_context(context)
