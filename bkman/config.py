# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification during a backup or restore run.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List
import re


class StorageBackend(str, Enum):
    """Storage backend holding the backup artifacts."""

    LOCAL = "local"
    S3 = "s3"


# Default mysqldump packet ceiling
DEFAULT_MAX_ALLOWED_PACKET = "64M"

# Default date suffix for artifact names (f_<suffix>.tar, d_<suffix>.gz)
DEFAULT_DATE_SUFFIX_FORMAT = "%Y-%m-%d"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9_$]+$")


def _validate_cron_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


def _validate_date_suffix_format(fmt: str) -> bool:
    """The suffix must render to a non-empty, path-safe token."""
    if not fmt:
        return False
    try:
        rendered = datetime(2024, 1, 31).strftime(fmt)
    except ValueError:
        return False
    return bool(rendered) and "/" not in rendered and "\\" not in rendered


def _validate_tables(tables: List[str]) -> bool:
    """Validate table subset configuration."""
    if not isinstance(tables, list):
        return False
    return all(isinstance(t, str) and _TABLE_NAME_RE.match(t) for t in tables)


@dataclass(frozen=True)
class DatabaseConnection:
    """MySQL connection parameters used by the dump/load tools and the sentinel."""

    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = field(default="", repr=False)
    database: str = ""


@dataclass(frozen=True)
class ToolPaths:
    """Executables invoked by the backup and restore runs."""

    tar: str = "tar"
    mysqldump: str = "mysqldump"
    mysql: str = "mysql"
    zcat: str = "zcat"
    gzip: str = "gzip"


@dataclass(frozen=True)
class ExecutionLimits:
    """
    Resource limits applied to external tool processes.

    None means unlimited. Limits are applied to child processes only;
    the calling process is never modified.
    """

    timeout_seconds: float | None = None
    memory_limit_bytes: int | None = None


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for backup, restore and retention runs.
    """

    # Directory (or key prefix) under which artifacts are stored
    backup_path: str = "backups"

    # Storage backend for the artifacts
    disk: StorageBackend = StorageBackend.LOCAL

    # Root directory of the local disk backend
    local_disk_root: Path = field(default_factory=lambda: Path("./storage"))

    # S3 backend settings
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_endpoint_url: str | None = None

    # strftime pattern for the artifact date suffix
    date_suffix_format: str = DEFAULT_DATE_SUFFIX_FORMAT

    # Files branch: archive these folders (absolute or relative to working_dir)
    files_enabled: bool = True
    folders: List[str] = field(default_factory=list)

    # Database branch: dump these tables only (empty = whole database)
    database_enabled: bool = True
    tables: List[str] = field(default_factory=list)

    # Delete artifacts at least this many days old
    retention_days: int = 30

    # Application root; archives are built and extracted here
    working_dir: Path = field(default_factory=Path.cwd)

    database: DatabaseConnection = field(default_factory=DatabaseConnection)

    tool_paths: ToolPaths = field(default_factory=ToolPaths)

    # Limits for external tools (None = unlimited)
    command_timeout_seconds: float | None = None
    memory_limit_mb: int | None = None

    # mysqldump --max-allowed-packet value
    max_allowed_packet: str = DEFAULT_MAX_ALLOWED_PACKET

    # Daily schedule in HH:MM (UTC) for the FastAPI plugin
    schedule_cron: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not self.backup_path or not self.backup_path.strip("/"):
            errors.append("backup_path must be a non-empty path")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if not _validate_date_suffix_format(self.date_suffix_format):
            errors.append(f"Invalid date_suffix_format: {self.date_suffix_format!r}")

        if self.disk == StorageBackend.S3 and not self.s3_bucket:
            errors.append("s3_bucket required when disk is 's3'")

        if self.tables and not _validate_tables(self.tables):
            errors.append("Invalid tables configuration")

        if self.schedule_cron and not _validate_cron_time(self.schedule_cron):
            errors.append(f"Invalid schedule_cron format: {self.schedule_cron}, expected HH:MM")

        if self.command_timeout_seconds is not None and self.command_timeout_seconds <= 0:
            errors.append(
                f"command_timeout_seconds must be > 0, got {self.command_timeout_seconds}"
            )

        if self.memory_limit_mb is not None and self.memory_limit_mb < 1:
            errors.append(f"memory_limit_mb must be >= 1, got {self.memory_limit_mb}")

        # Raise all errors at once
        if errors:
            from bkman.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def backup_prefix(self) -> str:
        """backup_path normalized without surrounding slashes."""
        return self.backup_path.strip("/")

    def execution_limits(self) -> ExecutionLimits:
        """Build the execution context handed to the command runner."""
        memory = self.memory_limit_mb * 1024 * 1024 if self.memory_limit_mb else None
        return ExecutionLimits(
            timeout_seconds=self.command_timeout_seconds,
            memory_limit_bytes=memory,
        )

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
