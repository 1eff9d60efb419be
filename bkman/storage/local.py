# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local disk storage backend.

Used both as a backup disk and as the gateway onto the working
directory where archives and dumps are built.
"""

import os
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, List

import aiofiles
import structlog

from bkman.exceptions import TransferError
from bkman.storage.base import CHUNK_SIZE, Artifact, artifact_from_listing

logger = structlog.get_logger()


class LocalStorage:
    """Storage gateway rooted at a local directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalStorage(root={str(self.root)!r})"

    def path_for(self, path: str) -> Path:
        """Resolve a storage path under the root, refusing traversal."""
        resolved = (self.root / path.lstrip("/")).resolve()
        root = self.root.resolve()
        if resolved != root and root not in resolved.parents:
            raise TransferError(
                f"Path escapes storage root: {path}",
                details={"root": str(self.root), "path": path},
            )
        return resolved

    async def exists(self, path: str) -> bool:
        return self.path_for(path).is_file()

    async def size(self, path: str) -> int:
        return self.path_for(path).stat().st_size

    async def delete(self, path: str) -> bool:
        target = self.path_for(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    async def list(self, prefix: str) -> List[Artifact]:
        directory = self.path_for(prefix)
        if not directory.is_dir():
            return []

        artifacts: List[Artifact] = []
        for entry in sorted(directory.iterdir()):
            if not entry.is_file() or entry.name.endswith(".tmp"):
                continue
            stat = entry.stat()
            artifacts.append(
                artifact_from_listing(
                    entry.name,
                    stat.st_size,
                    datetime.fromtimestamp(stat.st_mtime, UTC),
                )
            )
        return artifacts

    async def make_directory(self, path: str) -> None:
        self.path_for(path).mkdir(parents=True, exist_ok=True)

    async def read_stream(self, path: str) -> AsyncIterator[bytes]:
        try:
            handle = await aiofiles.open(self.path_for(path), "rb")
        except OSError as e:
            raise TransferError(
                f"Failed to open file stream for: {path}",
                details={"path": path, "error": str(e)},
            ) from e

        try:
            while True:
                chunk = await handle.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await handle.close()

    async def write_stream(self, path: str, chunks: AsyncIterable[bytes]) -> bool:
        """
        Write a stream to a file.

        The file is written atomically (write to temp, then rename) to
        prevent partial files.
        """
        target = self.path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(target.name + ".tmp")

        written = 0
        try:
            async with aiofiles.open(temp_path, "wb") as f:
                async for chunk in chunks:
                    await f.write(chunk)
                    written += len(chunk)
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug("local_stream_written", path=str(target), size=written)
        return True
