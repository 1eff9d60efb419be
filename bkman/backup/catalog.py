# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Catalog - Listing of stored backups for presentation.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List

from bkman.backup.retention import resolve_timestamp
from bkman.config import BackupConfig
from bkman.core import BackupState

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass
class CatalogEntry:
    """One stored backup as shown to an operator."""

    name: str
    kind: str
    size_raw: int
    size: str
    date: str
    timestamp: datetime | None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return data


def format_size_units(size: int) -> str:
    """
    Format a byte count with base-1024 units and two decimals.

    Examples: 0 -> "0.00 B", 1024 -> "1.00 KB", 1073741824 -> "1.00 GB"
    """
    power = 0
    while power < len(SIZE_UNITS) - 1 and size >= 1024 ** (power + 1):
        power += 1
    return f"{size / 1024 ** power:,.2f} {SIZE_UNITS[power]}"


async def get_backups(config: BackupConfig, state: BackupState) -> List[CatalogEntry]:
    """
    List stored backups, newest first.

    Args:
        config: bkman configuration
        state: Runtime state

    Returns:
        Catalog entries sorted by date descending
    """
    artifacts = await state["storage"].list(config.backup_prefix)

    entries: List[CatalogEntry] = []
    for artifact in artifacts:
        timestamp = resolve_timestamp(artifact, config.date_suffix_format)
        entries.append(
            CatalogEntry(
                name=artifact.name,
                kind=artifact.kind.label,
                size_raw=artifact.size_bytes,
                size=format_size_units(artifact.size_bytes),
                date=timestamp.strftime("%b %d %Y") if timestamp else "",
                timestamp=timestamp,
            )
        )

    entries.sort(key=lambda e: (e.timestamp or _EPOCH, e.name), reverse=True)
    return entries
