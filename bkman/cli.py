# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman command line interface.

Configuration comes from the environment (see bkman.env). Examples:

    # Back up files and database, then prune
    bkman create

    # Only the database; pruning only touches database dumps
    bkman create --only db

    # Restore a files archive and a dump
    bkman restore f_2024-03-01.tar d_2024-03-01.gz

    # Show stored backups as JSON
    bkman --json list
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import structlog

from bkman.backup import create_backup, delete_backups, get_backups, restore_backups
from bkman.config import BackupConfig
from bkman.core import BackupState, initialize_backup_state, shutdown_backup_state
from bkman.env import create_config_from_env
from bkman.errors import explain_invalid_only_option
from bkman.exceptions import BkmanError
from bkman.storage.base import ArtifactKind

logger = structlog.get_logger()


def _only_kind(value: str) -> ArtifactKind:
    try:
        return ArtifactKind.parse(value)
    except ValueError:
        raise argparse.ArgumentTypeError(explain_invalid_only_option(value))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bkman",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Print results as JSON.")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug events to stderr."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_create = subparsers.add_parser("create", help="Create a backup and prune old ones.")
    p_create.add_argument(
        "--only",
        type=_only_kind,
        default=None,
        help="Back up only 'files' or 'db'.",
    )

    p_restore = subparsers.add_parser("restore", help="Restore named backups.")
    p_restore.add_argument("names", nargs="+", help="Backup names, e.g. f_2024-03-01.tar")

    subparsers.add_parser("list", help="List stored backups, newest first.")

    p_delete = subparsers.add_parser("delete", help="Delete named backups.")
    p_delete.add_argument("names", nargs="+", help="Backup names to delete")

    return parser


def configure_logging(verbose: bool) -> None:
    """Send structlog output to stderr so stdout stays machine-readable."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.INFO
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _print(data, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


async def _run_create(config: BackupConfig, state: BackupState, args) -> int:
    status = await create_backup(config, state, only=args.only)
    data = {"run_id": status.run_id, **status.to_dict()}

    lines = [
        f"Files: {'ok' if data['f'] else 'FAILED'}",
        f"Database: {'ok' if data['d'] else 'FAILED'}",
    ]
    if status.fatal_error:
        lines.append(f"Error ({status.fatal_error_type}): {status.fatal_error}")
    lines.extend(f"Error: {e}" for e in status.errors)
    lines.extend(f"Pruned: {name}" for name in status.pruned)
    _print(data, args.json, "\n".join(lines))

    return 0 if status.fatal_error is None else 1


async def _run_restore(config: BackupConfig, state: BackupState, args) -> int:
    results = await restore_backups(config, state, args.names)

    lines = []
    for item in results:
        line = f"{item.name}: {'restored' if item.ok else 'FAILED'}"
        if item.error:
            line += f" ({item.error_type}: {item.error})"
        lines.append(line)
    _print([item.to_dict() for item in results], args.json, "\n".join(lines))

    return 0 if all(item.ok for item in results) else 1


async def _run_list(config: BackupConfig, state: BackupState, args) -> int:
    entries = await get_backups(config, state)

    if not entries:
        text = "No backups found."
    else:
        width = max(len(e.name) for e in entries)
        text = "\n".join(
            f"{e.name:<{width}}  {e.kind:<8}  {e.size:>12}  {e.date}" for e in entries
        )
    _print([e.to_dict() for e in entries], args.json, text)
    return 0


async def _run_delete(config: BackupConfig, state: BackupState, args) -> int:
    result = await delete_backups(config, state, args.names)

    lines = [f"Deleted: {name}" for name in result.deleted]
    lines.extend(f"Not found: {name}" for name in result.missing)
    lines.extend(f"Failed: {name}" for name in result.failed)
    data = {
        "ok": result.ok,
        "deleted": result.deleted,
        "missing": result.missing,
        "failed": result.failed,
    }
    _print(data, args.json, "\n".join(lines))
    return 0 if result.ok else 1


COMMANDS = {
    "create": _run_create,
    "restore": _run_restore,
    "list": _run_list,
    "delete": _run_delete,
}


async def run_command(args: argparse.Namespace, config: BackupConfig | None = None, **state_overrides) -> int:
    """Execute one parsed command against a fresh runtime state."""
    config = config or create_config_from_env()
    state = await initialize_backup_state(config, **state_overrides)
    try:
        return await COMMANDS[args.command](config, state, args)
    finally:
        await shutdown_backup_state(state)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return asyncio.run(run_command(args))
    except BkmanError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
