# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Backup Manager - Creation and verification of backups.

A backup cycle runs the files branch (tar archive of the configured
folders) and the database branch (gzipped mysqldump), streams each
artifact to the backup disk, prunes old artifacts and then re-checks
the stored artifacts independently of the tools' exit codes.
"""

import gzip
import zlib
from dataclasses import asdict
from datetime import datetime, UTC
from pathlib import Path
from typing import List

import structlog
from ulid import ULID

from bkman.backup.catalog import format_size_units
from bkman.backup.retention import delete_old_backups
from bkman.config import BackupConfig
from bkman.core import BackupState, RunStatus, backup_names, remote_path
from bkman.errors import (
    explain_dump_too_small,
    explain_missing_database_field,
    explain_missing_tool,
)
from bkman.exceptions import (
    BkmanError,
    ConfigurationError,
    ToolExecutionError,
    ToolNotFoundError,
    VerificationError,
)
from bkman.runner import truncate_output
from bkman.sentinel import SENTINEL_FILE_NAME, SENTINEL_TABLE, SentinelValue
from bkman.storage.base import ArtifactKind, copy_stream

logger = structlog.get_logger()

# A fresh gzipped dump smaller than this is treated as a failed dump
MIN_DUMP_SIZE_BYTES = 1024

# Stored artifacts must be larger than this to pass verification
VERIFY_FLOOR_BYTES = 1024

# Bytes of a too-small dump decompressed for the error message
DUMP_PREVIEW_BYTES = 1000

# mysqldump options: consistent snapshot, streamed rows, no SSL requirement
DUMP_OPTIONS = ("--single-transaction", "--quick", "--skip-ssl")


def describe_error(error: Exception) -> str:
    """Message of an error without the details payload."""
    if isinstance(error, BkmanError):
        return error.message
    return str(error)


def _archive_member(folder: str, working_dir: Path) -> str:
    """Express a configured folder relative to the working directory."""
    path = Path(folder)
    if path.is_absolute():
        try:
            path = path.relative_to(working_dir)
        except ValueError:
            return path.as_posix()
    return path.as_posix().lstrip("/") or "."


def _dump_preview(path: Path) -> str:
    """First bytes of a gzipped dump, for error messages."""
    try:
        with gzip.open(path, "rb") as f:
            return f.read(DUMP_PREVIEW_BYTES).decode("utf-8", errors="replace").strip()
    except (OSError, EOFError, zlib.error):
        return ""


async def _upload_local_file(config: BackupConfig, state: BackupState, name: str) -> None:
    """Stream a finished artifact from the working directory to the backup disk."""
    size = (config.working_dir / name).stat().st_size
    destination = remote_path(config, name)

    logger.info(
        "backup_upload_started",
        name=name,
        size=format_size_units(size),
    )

    await copy_stream(state["local"], name, state["storage"], destination)

    logger.info(
        "backup_uploaded",
        name=name,
        storage=repr(state["storage"]),
        path=destination,
    )


async def _delete_existing(config: BackupConfig, state: BackupState, name: str) -> None:
    """Drop an artifact with the same name, so same-day runs overwrite."""
    path = remote_path(config, name)
    if await state["storage"].exists(path):
        await state["storage"].delete(path)
        logger.info("existing_backup_deleted", name=name)


async def backup_files(config: BackupConfig, state: BackupState, name: str) -> bool:
    """
    Archive the configured folders and upload the archive.

    Args:
        config: bkman configuration
        state: Runtime state
        name: Artifact name (f_<suffix>.tar)

    Returns:
        False when no folders are configured, True once uploaded

    Raises:
        ToolNotFoundError: If tar is not installed
        ToolExecutionError: If tar produced no archive
        TransferError: If the upload failed
    """
    runner = state["runner"]
    tar = config.tool_paths.tar

    logger.info("files_backup_started", name=name)

    if not runner.exists(tar):
        raise ToolNotFoundError(explain_missing_tool(tar, "tar"), details={"tool": tar})

    await _delete_existing(config, state, name)

    if not config.folders:
        logger.warning("files_backup_no_folders", setting="folders")
        return False

    members = [_archive_member(folder, config.working_dir) for folder in config.folders]
    # The sentinel travels inside the archive
    members.append(SENTINEL_FILE_NAME)

    file_sentinel = state["sentinel"].files
    await file_sentinel.arm(SentinelValue.BACKUP)
    try:
        result = await runner.run(
            [tar, "-cpzf", name, "--", *members],
            cwd=config.working_dir,
        )
    finally:
        file_sentinel.discard()

    if result.output.strip():
        logger.warning("tar_output", output=truncate_output(result.output.strip()))

    archive_path = config.working_dir / name
    try:
        if not archive_path.exists():
            raise ToolExecutionError(
                "Backup file was not created. Command output: "
                + (result.output.strip() or "No output"),
                details={"name": name, "returncode": result.returncode},
            )

        logger.info(
            "files_archive_created",
            name=name,
            size=format_size_units(archive_path.stat().st_size),
        )
        await _upload_local_file(config, state, name)
    finally:
        archive_path.unlink(missing_ok=True)

    logger.info("files_backup_completed", name=name)
    return True


def build_dump_command(config: BackupConfig) -> List[str]:
    """mysqldump argument list; the password travels in MYSQL_PWD instead."""
    connection = config.database
    args = [
        config.tool_paths.mysqldump,
        *DUMP_OPTIONS,
        f"--max-allowed-packet={config.max_allowed_packet}",
        f"--user={connection.user}",
        f"--host={connection.host}",
        f"--port={connection.port}",
        connection.database,
    ]

    if config.tables:
        tables = list(config.tables)
        if SENTINEL_TABLE not in tables:
            tables.append(SENTINEL_TABLE)
        args.extend(tables)

    return args


def database_env(config: BackupConfig) -> dict | None:
    if config.database.password:
        return {"MYSQL_PWD": config.database.password}
    return None


async def backup_database(config: BackupConfig, state: BackupState, name: str) -> bool:
    """
    Dump the database through gzip and upload the dump.

    Args:
        config: bkman configuration
        state: Runtime state
        name: Artifact name (d_<suffix>.gz)

    Returns:
        True once uploaded

    Raises:
        ToolNotFoundError: If mysqldump or gzip is not installed
        ConfigurationError: If host or database name is missing
        ToolExecutionError: If no dump file was produced
        VerificationError: If the dump is implausibly small
        TransferError: If the upload failed
    """
    runner = state["runner"]
    connection = config.database

    logger.info("database_backup_started", name=name)

    if not runner.exists(config.tool_paths.mysqldump):
        raise ToolNotFoundError(
            explain_missing_tool(config.tool_paths.mysqldump, "MySQL client tools"),
            details={"tool": config.tool_paths.mysqldump},
        )
    if not runner.exists(config.tool_paths.gzip):
        raise ToolNotFoundError(
            explain_missing_tool(config.tool_paths.gzip, "gzip"),
            details={"tool": config.tool_paths.gzip},
        )

    await _delete_existing(config, state, name)

    if not connection.database:
        raise ConfigurationError(explain_missing_database_field("name"))
    if not connection.host:
        raise ConfigurationError(explain_missing_database_field("host"))

    # The sentinel row is part of the dump
    await state["sentinel"].arm(ArtifactKind.DATABASE, SentinelValue.BACKUP)

    if config.tables:
        logger.info("database_backup_tables", tables=config.tables)
    else:
        logger.info("database_backup_full", database=connection.database)

    dump_path = config.working_dir / name
    try:
        result = await runner.run_pipeline(
            [build_dump_command(config), [config.tool_paths.gzip, "-c"]],
            cwd=config.working_dir,
            env=database_env(config),
            stdout_path=dump_path,
        )

        output = result.output.strip()
        if output:
            lowered = output.lower()
            if "error" in lowered or "warning" in lowered:
                logger.error("mysqldump_reported_issues", output=truncate_output(output))
            else:
                logger.info("mysqldump_output", output=truncate_output(output))

        if not dump_path.exists():
            raise ToolExecutionError(
                "Database backup file was not created. Command output: "
                + (output or "No output"),
                details={"name": name, "returncode": result.returncode},
            )

        size = dump_path.stat().st_size
        if size < MIN_DUMP_SIZE_BYTES:
            preview = _dump_preview(dump_path) or output
            logger.error(
                "database_backup_too_small",
                size=size,
                min_expected=MIN_DUMP_SIZE_BYTES,
                content_preview=preview[:500],
            )
            raise VerificationError(
                explain_dump_too_small(size, MIN_DUMP_SIZE_BYTES, preview),
                details={"name": name, "size": size},
            )

        logger.info("database_dump_created", name=name, size=format_size_units(size))
        await _upload_local_file(config, state, name)
    finally:
        dump_path.unlink(missing_ok=True)

    logger.info("database_backup_completed", name=name)
    return True


async def get_backup_status(
    config: BackupConfig,
    state: BackupState,
    status: RunStatus,
    files_name: str | None,
    database_name: str | None,
) -> RunStatus:
    """
    Re-check the stored artifacts of a cycle.

    A branch whose name is None was disabled and stays None (vacuous
    success). An enabled branch passes only if its artifact exists and
    is larger than VERIFY_FLOOR_BYTES.
    """
    state["sentinel"].files.discard()
    storage = state["storage"]

    checks = (
        (ArtifactKind.FILES, files_name),
        (ArtifactKind.DATABASE, database_name),
    )
    for kind, name in checks:
        if name is None:
            continue

        path = remote_path(config, name)
        ok = False
        if not await storage.exists(path):
            status.errors.append(f"{kind.label} backup file does not exist at: {path}")
            logger.error("backup_verification_missing", kind=kind.label, path=path)
        else:
            size = await storage.size(path)
            if size <= VERIFY_FLOOR_BYTES:
                message = (
                    f"{kind.label} backup file is too small ({format_size_units(size)}, "
                    f"minimum: {format_size_units(VERIFY_FLOOR_BYTES)})"
                )
                if kind is ArtifactKind.DATABASE:
                    message += ". This usually indicates mysqldump failed."
                status.errors.append(message)
                logger.error(
                    "backup_verification_too_small",
                    kind=kind.label,
                    size=size,
                    minimum=VERIFY_FLOOR_BYTES,
                )
            else:
                ok = True

        if kind is ArtifactKind.FILES:
            status.files_ok = ok
        else:
            status.database_ok = ok

    return status


async def create_backup(
    config: BackupConfig,
    state: BackupState,
    only: ArtifactKind | None = None,
) -> RunStatus:
    """
    Run a complete backup cycle.

    This is the main entry point for backups. It:
    1. Logs the execution limits applied to the tools
    2. Backs up files, then the database (each if enabled)
    3. Prunes old backups
    4. Verifies the stored artifacts

    Any failure in step 2 aborts the cycle: both flags are reported
    false, fatal_error is set and pruning is skipped.

    Args:
        config: bkman configuration
        state: Runtime state
        only: Back up only this kind, even if disabled in config;
              pruning is narrowed to the same kind

    Returns:
        RunStatus with per-branch results
    """
    run_id = str(ULID())
    start_time = datetime.now(UTC)
    files_name, database_name = backup_names(config)

    files_enabled = config.files_enabled if only is None else only is ArtifactKind.FILES
    database_enabled = (
        config.database_enabled if only is None else only is ArtifactKind.DATABASE
    )

    logger.info(
        "backup_cycle_started",
        run_id=run_id,
        files=files_enabled,
        database=database_enabled,
        limits=asdict(state["runner"].limits),
    )

    status = RunStatus(run_id=run_id)

    try:
        if files_enabled:
            await backup_files(config, state, files_name)
        if database_enabled:
            await backup_database(config, state, database_name)
    except Exception as e:
        status.files_ok = False
        status.database_ok = False
        status.fatal_error = describe_error(e)
        status.fatal_error_type = type(e).__name__
        status.errors.append(status.fatal_error)
        status.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()

        state["last_error"] = status.fatal_error
        state["last_run_at"] = datetime.now(UTC)
        state["last_status"] = status
        state["total_runs"] += 1

        logger.error(
            "backup_cycle_failed",
            run_id=run_id,
            error=status.fatal_error,
            error_type=status.fatal_error_type,
            details=getattr(e, "details", None),
            exc_info=True,
        )
        return status

    prune_result = await delete_old_backups(config, state, kind=only)
    status.pruned = prune_result.deleted

    await get_backup_status(
        config,
        state,
        status,
        files_name if files_enabled else None,
        database_name if database_enabled else None,
    )

    status.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()
    state["last_run_at"] = datetime.now(UTC)
    state["last_status"] = status
    state["total_runs"] += 1

    if status.ok:
        state["last_error"] = None
        logger.info(
            "backup_cycle_completed",
            run_id=run_id,
            duration=status.duration_seconds,
            pruned=len(status.pruned),
        )
    else:
        state["last_error"] = "; ".join(status.errors) or None
        logger.warning("backup_cycle_completed_with_issues", run_id=run_id, **status.to_dict())
        for error in status.errors:
            logger.error("backup_verification_error", run_id=run_id, error=error)

    return status
