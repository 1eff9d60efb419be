# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Restore Manager - Restoring files and database backups.

Each requested artifact is restored independently: a failure is
recorded in its own result entry and the loop moves on.

Verification: right before the tool runs, the matching sentinel is
armed with "restore". The artifact carries the "backup" token written
when it was created, so a restore that really applied replaces
"restore" with "backup". Any other value means the archive or dump did
not land.
"""

import re
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import structlog
from ulid import ULID

from bkman.backup.manager import database_env, describe_error
from bkman.config import BackupConfig
from bkman.core import BackupState, RestoreItemStatus, remote_path
from bkman.errors import explain_missing_database_field, explain_missing_tool
from bkman.exceptions import (
    ConfigurationError,
    NotFoundError,
    ToolExecutionError,
    ToolNotFoundError,
    TransferError,
    VerificationError,
)
from bkman.runner import truncate_output
from bkman.sentinel import SentinelValue
from bkman.storage.base import ArtifactKind, copy_stream

logger = structlog.get_logger()

_VALID_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_tool_output(output: str, failure_message: str, event: str) -> None:
    """Fail when a tool printed an error, even if it exited cleanly."""
    text = output.strip()
    if not text:
        return
    if "error" in text.lower():
        logger.error(event, output=truncate_output(text))
        raise ToolExecutionError(f"{failure_message}: {text}")
    logger.info(event, output=truncate_output(text))


async def _ensure_remote(config: BackupConfig, state: BackupState, name: str) -> str:
    if not _VALID_NAME_RE.match(name):
        raise NotFoundError(
            f"Backup file not found: {name!r} is not a valid backup name",
            details={"name": name},
        )
    path = remote_path(config, name)
    if not await state["storage"].exists(path):
        raise NotFoundError(f"Backup file not found: {path}", details={"name": name})
    return path


async def _download(config: BackupConfig, state: BackupState, name: str) -> Path:
    """Stream an artifact from the backup disk into the working directory."""
    logger.info("restore_download_started", name=name)

    await copy_stream(state["storage"], remote_path(config, name), state["local"], name)

    local_path = config.working_dir / name
    if not local_path.exists():
        raise TransferError(
            f"Failed to download backup file to local storage: {name}",
            details={"name": name},
        )
    return local_path


async def restore_files(config: BackupConfig, state: BackupState, name: str) -> None:
    """
    Extract a files archive into the working directory.

    Raises:
        NotFoundError: If the archive is not stored
        ToolNotFoundError: If tar is not installed
        TransferError: If the download failed
        ToolExecutionError: If tar reported an error
    """
    tar = config.tool_paths.tar
    await _ensure_remote(config, state, name)

    if not state["runner"].exists(tar):
        raise ToolNotFoundError(explain_missing_tool(tar, "tar"), details={"tool": tar})

    local_path = config.working_dir / name
    try:
        await _download(config, state, name)
        await state["sentinel"].arm(ArtifactKind.FILES, SentinelValue.RESTORE)

        result = await state["runner"].run(
            [tar, "-xzf", name],
            cwd=config.working_dir,
        )
        _check_tool_output(result.output, "Tar extraction failed", "tar_extraction_output")
    finally:
        local_path.unlink(missing_ok=True)


async def restore_database(config: BackupConfig, state: BackupState, name: str) -> None:
    """
    Load a gzipped dump into the configured database.

    Raises:
        NotFoundError: If the dump is not stored
        ToolNotFoundError: If zcat or mysql is not installed
        ConfigurationError: If host or database name is missing
        TransferError: If the download failed
        ToolExecutionError: If the load reported an error
    """
    tools = config.tool_paths
    connection = config.database
    await _ensure_remote(config, state, name)

    if not state["runner"].exists(tools.zcat):
        raise ToolNotFoundError(
            explain_missing_tool(tools.zcat, "gzip utilities"), details={"tool": tools.zcat}
        )
    if not state["runner"].exists(tools.mysql):
        raise ToolNotFoundError(
            explain_missing_tool(tools.mysql, "the MySQL client"), details={"tool": tools.mysql}
        )

    if not connection.database:
        raise ConfigurationError(explain_missing_database_field("name"))
    if not connection.host:
        raise ConfigurationError(explain_missing_database_field("host"))

    local_path = config.working_dir / name
    try:
        await _download(config, state, name)
        await state["sentinel"].arm(ArtifactKind.DATABASE, SentinelValue.RESTORE)

        load_command = [
            tools.mysql,
            f"--user={connection.user}",
            f"--host={connection.host}",
            f"--port={connection.port}",
            connection.database,
        ]
        result = await state["runner"].run_pipeline(
            [[tools.zcat, "--", name], load_command],
            cwd=config.working_dir,
            env=database_env(config),
        )
        _check_tool_output(result.output, "Database restore failed", "database_restore_output")
    finally:
        local_path.unlink(missing_ok=True)


async def restore_backups(
    config: BackupConfig,
    state: BackupState,
    names: List[str],
) -> List[RestoreItemStatus]:
    """
    Restore each named backup and verify it through its sentinel.

    The kind of each item comes from its name: 'f...' is a files
    archive, anything else a database dump.

    Args:
        config: bkman configuration
        state: Runtime state
        names: Artifact names, restored in order

    Returns:
        One RestoreItemStatus per name, in input order
    """
    restore_op_id = str(ULID())
    start_time = datetime.now(UTC)

    logger.info("restore_operation_started", restore_op_id=restore_op_id, names=names)

    results: List[RestoreItemStatus] = []

    for name in names:
        kind = ArtifactKind.from_name(name)

        try:
            logger.info("restore_item_started", name=name, kind=kind.label)
            if kind is ArtifactKind.FILES:
                await restore_files(config, state, name)
            else:
                await restore_database(config, state, name)

            observed = await state["sentinel"].check(kind)
            if observed == SentinelValue.BACKUP.value:
                item = RestoreItemStatus(name=name, kind=kind, ok=True)
                logger.info("restore_item_succeeded", name=name)
            else:
                error = VerificationError(
                    f"Restore verification failed for {name}: "
                    f"sentinel is {observed!r}, expected {SentinelValue.BACKUP.value!r}"
                )
                item = RestoreItemStatus(
                    name=name,
                    kind=kind,
                    ok=False,
                    error=error.message,
                    error_type=type(error).__name__,
                )
                logger.error("restore_item_unverified", name=name, observed=observed)

        except Exception as e:
            if kind is ArtifactKind.FILES:
                state["sentinel"].files.discard()
            item = RestoreItemStatus(
                name=name,
                kind=kind,
                ok=False,
                error=describe_error(e),
                error_type=type(e).__name__,
            )
            logger.error(
                "restore_item_failed",
                name=name,
                error=describe_error(e),
                error_type=type(e).__name__,
                details=getattr(e, "details", None),
                exc_info=True,
            )

        results.append(item)

    state["total_restores"] += 1
    duration = (datetime.now(UTC) - start_time).total_seconds()

    logger.info(
        "restore_operation_completed",
        restore_op_id=restore_op_id,
        restored=sum(1 for r in results if r.ok),
        failed=sum(1 for r in results if not r.ok),
        duration=duration,
    )

    return results
