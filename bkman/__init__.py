# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman - Backup manager for application files and MySQL databases.

Archives configured folders with tar, dumps the database with mysqldump,
streams both to local or S3 storage, verifies every run through a
sentinel token and prunes backups past their retention period.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from bkman.builder import create_config

# Environment-based configuration
from bkman.env import create_config_from_env

# Core functions
from bkman.core import (
    initialize_backup_state,
    shutdown_backup_state,
)

from bkman.backup import (
    create_backup,
    delete_backups,
    delete_old_backups,
    get_backups,
    restore_backups,
)

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    # Runtime state
    "initialize_backup_state",
    "shutdown_backup_state",
    # Operations
    "create_backup",
    "delete_backups",
    "delete_old_backups",
    "get_backups",
    "restore_backups",
]
