# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Retention - Age-based pruning of stored backups.

The sweep is best-effort: a failed delete or an undatable name is
logged and the sweep moves on.
"""

from datetime import date, datetime, UTC
from typing import List

import structlog

from bkman.config import BackupConfig
from bkman.core import BackupState, DeleteResult, PruneResult, remote_path
from bkman.storage.base import Artifact, ArtifactKind

logger = structlog.get_logger()


def parse_name_date(name: str, date_format: str) -> datetime | None:
    """
    Parse the date suffix of an artifact name such as f_2024-01-31.tar.

    Tries the configured suffix format first, then ISO dates. Returns a
    UTC midnight timestamp, or None when the name carries no date.
    """
    stem = name
    head, dot, extension = name.rpartition(".")
    if dot and extension.isalpha():
        stem = head

    _, underscore, suffix = stem.partition("_")
    if not underscore or not suffix:
        return None

    try:
        return datetime.strptime(suffix, date_format).replace(tzinfo=UTC)
    except ValueError:
        pass

    try:
        parsed = date.fromisoformat(suffix)
    except ValueError:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)


def resolve_timestamp(artifact: Artifact, date_format: str) -> datetime | None:
    """Storage modification time if known, else the date in the name."""
    if artifact.last_modified is not None:
        if artifact.last_modified.tzinfo is None:
            return artifact.last_modified.replace(tzinfo=UTC)
        return artifact.last_modified
    return parse_name_date(artifact.name, date_format)


def age_in_days(timestamp: datetime, now: datetime) -> int:
    """Whole days elapsed between timestamp and now."""
    return (now - timestamp).days


async def delete_old_backups(
    config: BackupConfig,
    state: BackupState,
    kind: ArtifactKind | None = None,
    now: datetime | None = None,
) -> PruneResult:
    """
    Delete stored backups at least config.retention_days old.

    Args:
        config: bkman configuration
        state: Runtime state
        kind: Only sweep artifacts of this kind (default: all)
        now: Reference time (default: current UTC time)

    Returns:
        PruneResult listing deleted, kept, failed and undatable names
    """
    now = now or datetime.now(UTC)
    storage = state["storage"]
    result = PruneResult()

    artifacts = await storage.list(config.backup_prefix)

    for artifact in artifacts:
        if kind is not None and artifact.kind is not kind:
            continue

        timestamp = resolve_timestamp(artifact, config.date_suffix_format)
        if timestamp is None:
            result.unparseable.append(artifact.name)
            logger.warning("backup_age_unknown", name=artifact.name)
            continue

        age_days = age_in_days(timestamp, now)
        if age_days < config.retention_days:
            result.kept.append(artifact.name)
            continue

        path = remote_path(config, artifact.name)
        try:
            if await storage.exists(path):
                await storage.delete(path)
                result.deleted.append(artifact.name)
                result.bytes_freed += artifact.size_bytes
                logger.info(
                    "old_backup_deleted",
                    name=artifact.name,
                    age_days=age_days,
                    retention_days=config.retention_days,
                )
        except Exception as e:
            result.failed.append(artifact.name)
            logger.warning(
                "old_backup_delete_failed",
                name=artifact.name,
                error=str(e),
            )

    logger.info(
        "backup_pruning_complete",
        kind=kind.label if kind else None,
        deleted=len(result.deleted),
        kept=len(result.kept),
        failed=len(result.failed),
        bytes_freed=result.bytes_freed,
    )

    return result


async def delete_backups(
    config: BackupConfig,
    state: BackupState,
    names: List[str],
) -> DeleteResult:
    """
    Delete the named backups.

    Missing names are reported in the result rather than raised.
    """
    storage = state["storage"]
    result = DeleteResult()

    for name in names:
        path = remote_path(config, name)
        try:
            if not await storage.exists(path):
                result.missing.append(name)
                logger.warning("backup_delete_missing", name=name)
                continue
            await storage.delete(path)
            result.deleted.append(name)
            logger.info("backup_deleted", name=name)
        except Exception as e:
            result.failed.append(name)
            logger.error("backup_delete_failed", name=name, error=str(e))

    return result
