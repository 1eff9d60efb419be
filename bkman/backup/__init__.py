# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Backup creation, restore, retention and listing.
"""

from bkman.backup.catalog import (
    CatalogEntry,
    format_size_units,
    get_backups,
)

from bkman.backup.manager import (
    backup_database,
    backup_files,
    create_backup,
    get_backup_status,
)

from bkman.backup.restore import (
    restore_backups,
    restore_database,
    restore_files,
)

from bkman.backup.retention import (
    delete_backups,
    delete_old_backups,
    parse_name_date,
)

__all__ = [
    # Catalog
    "CatalogEntry",
    "format_size_units",
    "get_backups",
    # Manager
    "backup_database",
    "backup_files",
    "create_backup",
    "get_backup_status",
    # Restore
    "restore_backups",
    "restore_database",
    "restore_files",
    # Retention
    "delete_backups",
    "delete_old_backups",
    "parse_name_date",
]
