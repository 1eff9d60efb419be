# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Gateway - Uniform access to the backup disk and the working directory.
"""

from bkman.config import BackupConfig, StorageBackend
from bkman.storage.base import (
    Artifact,
    ArtifactKind,
    StorageGateway,
    artifact_from_listing,
    copy_stream,
)
from bkman.storage.local import LocalStorage
from bkman.storage.s3 import S3Storage


def create_storage(config: BackupConfig) -> StorageGateway:
    """Build the storage gateway selected by config.disk."""
    if config.disk == StorageBackend.S3:
        return S3Storage(
            bucket=config.s3_bucket or "",
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
        )
    return LocalStorage(config.local_disk_root)


__all__ = [
    "Artifact",
    "ArtifactKind",
    "LocalStorage",
    "S3Storage",
    "StorageGateway",
    "artifact_from_listing",
    "copy_stream",
    "create_storage",
]
