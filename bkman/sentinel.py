# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Verification Sentinel - Markers proving a run completed end-to-end.

Exit codes from tar and mysqldump do not reliably report partial
failure, so a token is written right before the tool runs and read
right after:

- Files channel: a `backup-verify` file in the working directory. It
  travels inside the archive, and reading it also deletes it so a
  stale token can never pass for a fresh one.
- Database channel: a one-row `verifybackup` table. It is part of
  every dump, survives across runs and is only ever overwritten.
"""

from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from bkman.config import DatabaseConnection
from bkman.storage.base import ArtifactKind

logger = structlog.get_logger()

SENTINEL_FILE_NAME = "backup-verify"
SENTINEL_TABLE = "verifybackup"
SENTINEL_ROW_ID = 1

CREATE_SENTINEL_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {SENTINEL_TABLE} (
        id INT UNSIGNED NOT NULL PRIMARY KEY,
        verify_status ENUM('backup', 'restore') NOT NULL
    )
"""

UPSERT_SENTINEL_SQL = f"""
    INSERT INTO {SENTINEL_TABLE} (id, verify_status) VALUES (%s, %s)
    ON DUPLICATE KEY UPDATE verify_status = %s
"""

SELECT_SENTINEL_SQL = f"SELECT verify_status FROM {SENTINEL_TABLE} WHERE id = %s"


class SentinelValue(str, Enum):
    """Token values written before a run."""

    BACKUP = "backup"
    RESTORE = "restore"


class FileSentinel:
    """Single-use token file in the working directory."""

    def __init__(self, working_dir: Path | str, name: str = SENTINEL_FILE_NAME):
        self.working_dir = Path(working_dir)
        self.name = name

    @property
    def path(self) -> Path:
        return self.working_dir / self.name

    async def arm(self, value: SentinelValue) -> None:
        async with aiofiles.open(self.path, "w", encoding="utf-8") as f:
            await f.write(value.value)
        logger.debug("file_sentinel_armed", path=str(self.path), value=value.value)

    async def check(self) -> str | None:
        """Read and delete the token; None when missing or unreadable."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                contents = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("file_sentinel_unreadable", path=str(self.path), error=str(e))
            return None
        finally:
            self.discard()

        logger.debug("file_sentinel_checked", path=str(self.path), value=contents)
        return contents

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)


class DatabaseSentinel:
    """Token row in the `verifybackup` table of the application database."""

    def __init__(self, connection: DatabaseConnection, pool: Any = None):
        self.connection = connection
        self._pool = pool
        self._table_ready = False

    async def _get_pool(self) -> Any:
        if self._pool is None:
            import aiomysql

            self._pool = await aiomysql.create_pool(
                host=self.connection.host,
                port=self.connection.port,
                user=self.connection.user,
                password=self.connection.password,
                db=self.connection.database,
                charset="utf8mb4",
                autocommit=True,
                minsize=1,
                maxsize=2,
            )
        return self._pool

    async def _execute(self, query: str, params: tuple = ()) -> Any:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(query, params)
                return await cursor.fetchone()

    async def ensure_table(self) -> None:
        if self._table_ready:
            return
        await self._execute(CREATE_SENTINEL_TABLE_SQL)
        self._table_ready = True

    async def arm(self, value: SentinelValue) -> None:
        await self.ensure_table()
        await self._execute(
            UPSERT_SENTINEL_SQL, (SENTINEL_ROW_ID, value.value, value.value)
        )
        logger.debug("database_sentinel_armed", table=SENTINEL_TABLE, value=value.value)

    async def check(self) -> str | None:
        await self.ensure_table()
        row = await self._execute(SELECT_SENTINEL_SQL, (SENTINEL_ROW_ID,))
        value = row[0] if row else None
        logger.debug("database_sentinel_checked", table=SENTINEL_TABLE, value=value)
        return value

    async def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None


class VerificationSentinel:
    """Both sentinel channels behind one arm/check interface."""

    def __init__(self, files: FileSentinel, database: DatabaseSentinel):
        self.files = files
        self.database = database

    def channel(self, kind: ArtifactKind) -> FileSentinel | DatabaseSentinel:
        return self.files if kind is ArtifactKind.FILES else self.database

    async def arm(self, kind: ArtifactKind, value: SentinelValue) -> None:
        await self.channel(kind).arm(value)

    async def check(self, kind: ArtifactKind) -> str | None:
        return await self.channel(kind).check()
