# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage Gateway - Backend-independent storage interface.

Every backend returns the same Artifact records from list(), with the
artifact kind derived once here from the name prefix. Callers never see
backend-specific listing shapes.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterable, AsyncIterator, List, Protocol, runtime_checkable

import structlog

from bkman.exceptions import TransferError

logger = structlog.get_logger()

# Chunk size for local streaming reads
CHUNK_SIZE = 1024 * 1024


class ArtifactKind(str, Enum):
    """Kind of a stored backup, encoded as the first character of its name."""

    FILES = "f"
    DATABASE = "d"

    @property
    def code(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return "Files" if self is ArtifactKind.FILES else "Database"

    @classmethod
    def from_name(cls, name: str) -> "ArtifactKind":
        """'f' prefix means files; anything else is treated as a database dump."""
        return cls.FILES if name[:1] == "f" else cls.DATABASE

    @classmethod
    def parse(cls, value: str) -> "ArtifactKind":
        """Parse user input such as 'files', 'db', 'f' or 'd'."""
        lowered = value.strip().lower()
        if lowered in ("f", "files", "file"):
            return cls.FILES
        if lowered in ("d", "db", "database"):
            return cls.DATABASE
        raise ValueError(value)


@dataclass(frozen=True)
class Artifact:
    """A stored backup unit."""

    name: str
    kind: ArtifactKind
    size_bytes: int
    last_modified: datetime | None = None


def artifact_from_listing(
    name: str,
    size_bytes: int | None,
    last_modified: datetime | None,
) -> Artifact:
    """Map one backend listing entry to an Artifact."""
    return Artifact(
        name=name,
        kind=ArtifactKind.from_name(name),
        size_bytes=int(size_bytes or 0),
        last_modified=last_modified,
    )


@runtime_checkable
class StorageGateway(Protocol):
    """Capability set the orchestrators need from a storage backend."""

    async def exists(self, path: str) -> bool: ...

    async def size(self, path: str) -> int: ...

    async def delete(self, path: str) -> bool: ...

    async def list(self, prefix: str) -> List[Artifact]: ...

    async def make_directory(self, path: str) -> None: ...

    def read_stream(self, path: str) -> AsyncIterator[bytes]: ...

    async def write_stream(self, path: str, chunks: AsyncIterable[bytes]) -> bool: ...


async def copy_stream(
    source: StorageGateway,
    source_path: str,
    destination: StorageGateway,
    destination_path: str,
) -> None:
    """
    Stream one object from a gateway to another in bounded memory.

    Raises:
        TransferError: If the stream cannot be opened or written
    """
    try:
        written = await destination.write_stream(
            destination_path, source.read_stream(source_path)
        )
    except TransferError:
        raise
    except Exception as e:
        raise TransferError(
            f"Failed to transfer {source_path} to {destination_path}: {e}",
            details={"source": source_path, "destination": destination_path},
        ) from e

    if not written:
        raise TransferError(
            f"Failed to transfer {source_path} to {destination_path}",
            details={"source": source_path, "destination": destination_path},
        )

    logger.debug(
        "stream_copied",
        source=source_path,
        destination=destination_path,
    )
