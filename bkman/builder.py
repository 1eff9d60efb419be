# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Builder - Functional builder pattern for configuration.

This module provides pure functions for building BackupConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from bkman.config import (
    DEFAULT_DATE_SUFFIX_FORMAT,
    DEFAULT_MAX_ALLOWED_PACKET,
    BackupConfig,
    DatabaseConnection,
    StorageBackend,
    ToolPaths,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "backup_path": "backups",
        "disk": StorageBackend.LOCAL,
        "local_disk_root": Path("./storage"),
        "s3_bucket": None,
        "s3_region": "us-east-1",
        "s3_endpoint_url": None,
        "date_suffix_format": DEFAULT_DATE_SUFFIX_FORMAT,
        "files_enabled": True,
        "folders": [],
        "database_enabled": True,
        "tables": [],
        "retention_days": 30,
        "working_dir": Path.cwd(),
        "database": DatabaseConnection(),
        "tool_paths": ToolPaths(),
        "command_timeout_seconds": None,
        "memory_limit_mb": None,
        "max_allowed_packet": DEFAULT_MAX_ALLOWED_PACKET,
        "schedule_cron": None,
    }


def with_disk(config: ConfigDict, disk: StorageBackend | str) -> ConfigDict:
    """
    Select the storage backend ('local' or 's3') by name.
    """
    return {**config, "disk": StorageBackend(disk)}


def with_local_disk(config: ConfigDict, root: Path | str) -> ConfigDict:
    """
    Store backups on the local filesystem under root.
    """
    return {**with_disk(config, StorageBackend.LOCAL), "local_disk_root": Path(root)}


def with_s3_disk(
    config: ConfigDict,
    bucket: str,
    region: str = "us-east-1",
    endpoint_url: str | None = None,
) -> ConfigDict:
    """
    Store backups in an S3 bucket.

    Args:
        config: Current configuration dictionary
        bucket: Bucket name
        region: AWS region
        endpoint_url: Custom endpoint for S3-compatible stores (MinIO, R2, ...)

    Returns:
        New configuration dictionary with the s3 disk selected
    """
    return {
        **with_disk(config, StorageBackend.S3),
        "s3_bucket": bucket,
        "s3_region": region,
        "s3_endpoint_url": endpoint_url,
    }


def with_backup_path(config: ConfigDict, backup_path: str) -> ConfigDict:
    """
    Set the directory (or key prefix) holding the artifacts.
    """
    return {**config, "backup_path": backup_path}


def with_working_dir(config: ConfigDict, working_dir: Path | str) -> ConfigDict:
    """
    Set the application root where archives are built and extracted.
    """
    return {**config, "working_dir": Path(working_dir)}


def with_date_suffix(config: ConfigDict, date_format: str) -> ConfigDict:
    """
    Set the strftime pattern of the artifact date suffix.
    """
    return {**config, "date_suffix_format": date_format}


def backup_folders(config: ConfigDict, folders: List[str]) -> ConfigDict:
    """
    Add folders to the files backup and enable it.

    Args:
        config: Current configuration dictionary
        folders: Folders, absolute or relative to the working directory

    Returns:
        New configuration dictionary with folders added
    """
    new_folders = list(config["folders"]) + list(folders)
    return {**config, "files_enabled": True, "folders": new_folders}


def backup_tables(config: ConfigDict, tables: List[str]) -> ConfigDict:
    """
    Restrict the database dump to these tables.

    The sentinel table is always added to the dump.
    """
    new_tables = list(config["tables"]) + list(tables)
    return {**config, "database_enabled": True, "tables": new_tables}


def disable_files(config: ConfigDict) -> ConfigDict:
    return {**config, "files_enabled": False}


def disable_database(config: ConfigDict) -> ConfigDict:
    return {**config, "database_enabled": False}


def with_database(
    config: ConfigDict,
    *,
    host: str,
    database: str,
    user: str = "root",
    password: str = "",
    port: int = 3306,
) -> ConfigDict:
    """
    Set the MySQL connection used by mysqldump, mysql and the sentinel.
    """
    connection = DatabaseConnection(
        host=host,
        port=port,
        user=user,
        password=password,
        database=database,
    )
    return {**config, "database_enabled": True, "database": connection}


def keep_backups_for(config: ConfigDict, days: int) -> ConfigDict:
    """
    Set the retention period in days.

    Backups at least this many days old are deleted after each run.

    Args:
        config: Current configuration dictionary
        days: Retention threshold in days

    Returns:
        New configuration dictionary with retention period set
    """
    if days < 0:
        raise ValueError(f"retention days must be >= 0, got {days}")
    return {**config, "retention_days": days}


def with_tool_paths(config: ConfigDict, **paths: str) -> ConfigDict:
    """
    Override external tool locations (tar, mysqldump, mysql, zcat, gzip).
    """
    current = config["tool_paths"]
    unknown = set(paths) - set(ToolPaths.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown tools: {sorted(unknown)}")
    merged = {name: getattr(current, name) for name in ToolPaths.__dataclass_fields__}
    merged.update(paths)
    return {**config, "tool_paths": ToolPaths(**merged)}


def with_limits(
    config: ConfigDict,
    timeout_seconds: float | None = None,
    memory_limit_mb: int | None = None,
) -> ConfigDict:
    """
    Set limits applied to every external tool process.

    None leaves the limit off, which is the default.
    """
    return {
        **config,
        "command_timeout_seconds": timeout_seconds,
        "memory_limit_mb": memory_limit_mb,
    }


def run_daily_at(config: ConfigDict, time: str) -> ConfigDict:
    """
    Set the daily schedule time (UTC).

    Args:
        config: Current configuration dictionary
        time: Time in HH:MM format (e.g., '02:30' for 2:30 AM UTC)

    Returns:
        New configuration dictionary with schedule set
    """
    parts = time.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time: {time}")

    return {**config, "schedule_cron": time}


def build_config(config_dict: ConfigDict) -> BackupConfig:
    """
    Validate and build an immutable BackupConfig from a configuration dictionary.

    Raises:
        ConfigurationError: If validation fails
    """
    return BackupConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: backup_folders(c, ["storage/app"]),
            lambda c: keep_backups_for(c, 14),
            disable_database,
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> BackupConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    *,
    folders: List[str] | None = None,
    tables: List[str] | None = None,
    files_enabled: bool = True,
    database_enabled: bool = True,
    database: DatabaseConnection | None = None,
    backup_path: str = "backups",
    local_disk_root: str | Path | None = None,
    s3_bucket: str | None = None,
    s3_region: str = "us-east-1",
    s3_endpoint_url: str | None = None,
    retention_days: int = 30,
    working_dir: str | Path | None = None,
    schedule_cron: str | None = None,
    **kwargs: Any,
) -> BackupConfig:
    """
    Create bkman configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Example:
        config = create_config(
            folders=["storage/app", "public/uploads"],
            database=DatabaseConnection(host="db", database="app", user="app"),
            s3_bucket="my-backups",
            retention_days=14,
        )
    """
    config_dict = create_empty_config()

    if s3_bucket:
        config_dict = with_s3_disk(config_dict, s3_bucket, s3_region, s3_endpoint_url)
    elif local_disk_root:
        config_dict = with_local_disk(config_dict, local_disk_root)

    config_dict = with_backup_path(config_dict, backup_path)

    if folders:
        config_dict = backup_folders(config_dict, folders)
    if tables:
        config_dict = backup_tables(config_dict, tables)
    if database is not None:
        config_dict["database"] = database

    config_dict["files_enabled"] = files_enabled
    config_dict["database_enabled"] = database_enabled

    config_dict = keep_backups_for(config_dict, retention_days)

    if working_dir:
        config_dict = with_working_dir(config_dict, working_dir)

    if schedule_cron:
        config_dict = run_daily_at(config_dict, schedule_cron)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
