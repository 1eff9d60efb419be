# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Core - Run results and runtime state shared by the orchestrators.

The state bundles the collaborators a run needs (storage gateways,
command runner, sentinels) so the orchestrator functions stay plain
async functions taking (config, state, ...).
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Tuple, TypedDict

import structlog

from bkman.config import BackupConfig
from bkman.runner import CommandRunner
from bkman.sentinel import DatabaseSentinel, FileSentinel, VerificationSentinel
from bkman.storage import LocalStorage, StorageGateway, create_storage
from bkman.storage.base import ArtifactKind

logger = structlog.get_logger()


@dataclass
class RunStatus:
    """
    Result of one backup cycle.

    files_ok / database_ok are None when the branch was disabled; the
    wire form reports a disabled branch as successful.
    """

    run_id: str
    files_ok: bool | None = None
    database_ok: bool | None = None
    errors: List[str] = field(default_factory=list)
    fatal_error: str | None = None
    fatal_error_type: str | None = None
    pruned: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return (
            self.fatal_error is None
            and self.files_ok is not False
            and self.database_ok is not False
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "f": self.files_ok is not False,
            "d": self.database_ok is not False,
        }
        if self.errors:
            result["errors"] = list(self.errors)
        if self.fatal_error is not None:
            result["error"] = self.fatal_error
            result["error_type"] = self.fatal_error_type
        return result


@dataclass
class RestoreItemStatus:
    """Result of restoring one artifact."""

    name: str
    kind: ArtifactKind
    ok: bool
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {self.kind.code: self.ok, "name": self.name}
        if self.error is not None:
            result["error"] = self.error
            result["error_type"] = self.error_type
        return result


@dataclass
class PruneResult:
    """Result of a retention sweep."""

    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    unparseable: List[str] = field(default_factory=list)
    bytes_freed: int = 0


@dataclass
class DeleteResult:
    """Result of an explicit delete request."""

    deleted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.failed


class BackupState(TypedDict):
    """Runtime state for backup operations."""

    storage: StorageGateway  # backup disk
    local: LocalStorage  # working directory
    runner: CommandRunner
    sentinel: VerificationSentinel
    last_run_at: datetime | None
    last_status: RunStatus | None
    total_runs: int
    total_restores: int
    last_error: str | None


def backup_names(config: BackupConfig, now: datetime | None = None) -> Tuple[str, str]:
    """
    Compute today's artifact names.

    Names are keyed by the UTC date, not time, so a second run on the same
    day overwrites the first. Retention reads the suffix back as UTC.
    """
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    suffix = now.strftime(config.date_suffix_format)
    return f"{ArtifactKind.FILES.code}_{suffix}.tar", f"{ArtifactKind.DATABASE.code}_{suffix}.gz"


def remote_path(config: BackupConfig, name: str) -> str:
    """Storage path of an artifact under the backup root."""
    return f"{config.backup_prefix}/{name}"


async def initialize_backup_state(
    config: BackupConfig,
    *,
    storage: StorageGateway | None = None,
    runner: CommandRunner | None = None,
    database_sentinel: DatabaseSentinel | None = None,
) -> BackupState:
    """
    Initialize runtime state for backup operations.

    Builds the storage gateways, the command runner and the sentinels,
    and makes sure the backup directory exists.

    Args:
        config: bkman configuration
        storage: Override for the backup disk (defaults to config.disk)
        runner: Override for the command runner
        database_sentinel: Override for the database sentinel channel

    Returns:
        Initialized BackupState dictionary
    """
    backup_storage = storage or create_storage(config)
    await backup_storage.make_directory(config.backup_prefix)

    sentinel = VerificationSentinel(
        FileSentinel(config.working_dir),
        database_sentinel or DatabaseSentinel(config.database),
    )

    logger.info(
        "backup_state_initialized",
        disk=config.disk.value,
        backup_path=config.backup_prefix,
        working_dir=str(config.working_dir),
    )

    return BackupState(
        storage=backup_storage,
        local=LocalStorage(config.working_dir),
        runner=runner or CommandRunner(config.execution_limits()),
        sentinel=sentinel,
        last_run_at=None,
        last_status=None,
        total_runs=0,
        total_restores=0,
        last_error=None,
    )


async def shutdown_backup_state(state: BackupState) -> None:
    """Cleanup resources."""
    try:
        await state["sentinel"].database.close()
    except Exception as e:
        logger.warning("database_sentinel_close_failed", error=str(e))

    logger.info("backup_state_shutdown_complete")
