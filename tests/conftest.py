# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for bkman tests.

Provides an in-memory backup disk, a scripted command runner standing in
for tar/mysqldump/mysql, an in-memory database sentinel and test
configuration helpers.
"""

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, Generator, List

import pytest
import pytest_asyncio

from bkman.config import BackupConfig, DatabaseConnection, ExecutionLimits
from bkman.runner import CommandResult
from bkman.sentinel import SENTINEL_FILE_NAME, SentinelValue
from bkman.storage.base import Artifact, artifact_from_listing

# Set test environment variables
os.environ["BKMAN_ADMIN_API_KEY"] = "test-api-key-12345"

AUTH_HEADERS = {"Authorization": "Bearer test-api-key-12345"}


class MemoryStorage:
    """Backup disk kept in a dict; listings carry no modification time."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.last_modified: Dict[str, datetime] = {}
        self.failing_deletes: set = set()
        self.operations: List[tuple] = []

    async def exists(self, path: str) -> bool:
        return path in self.objects

    async def size(self, path: str) -> int:
        return len(self.objects[path])

    async def delete(self, path: str) -> bool:
        self.operations.append(("delete", path))
        if path in self.failing_deletes:
            raise OSError(f"permission denied: {path}")
        return self.objects.pop(path, None) is not None

    async def list(self, prefix: str) -> List[Artifact]:
        key_prefix = prefix.strip("/") + "/"
        artifacts = []
        for path, body in sorted(self.objects.items()):
            if not path.startswith(key_prefix):
                continue
            name = path[len(key_prefix):]
            if "/" in name:
                continue
            artifacts.append(
                artifact_from_listing(name, len(body), self.last_modified.get(path))
            )
        return artifacts

    async def make_directory(self, path: str) -> None:
        pass

    async def read_stream(self, path: str) -> AsyncIterator[bytes]:
        body = self.objects[path]
        for start in range(0, len(body), 1024):
            yield body[start:start + 1024]

    async def write_stream(self, path: str, chunks: AsyncIterable[bytes]) -> bool:
        self.operations.append(("write", path))
        data = bytearray()
        async for chunk in chunks:
            data.extend(chunk)
        self.objects[path] = bytes(data)
        return True

    def put(self, path: str, body: bytes = b"x" * 2048) -> None:
        self.objects[path] = body


class FakeDatabaseSentinel:
    """Stands in for the verifybackup table."""

    def __init__(self, value: str | None = None):
        self.value = value
        self.armed: List[str] = []
        self.closed = False

    async def ensure_table(self) -> None:
        pass

    async def arm(self, value: SentinelValue) -> None:
        self.armed.append(value.value)
        self.value = value.value

    async def check(self) -> str | None:
        return self.value

    async def close(self) -> None:
        self.closed = True


class FakeRunner:
    """
    Scripted replacement for CommandRunner.

    tar -cpzf writes an archive of archive_size bytes and remembers the
    sentinel it packed; tar -xzf plants the packed sentinel back. The
    dump pipeline writes dump_bytes; the load pipeline sets the database
    sentinel to the value captured at dump time.
    """

    def __init__(self, database_sentinel: FakeDatabaseSentinel):
        self.limits = ExecutionLimits()
        self.database_sentinel = database_sentinel
        self.missing: set = set()
        self.calls: List[List[str]] = []
        self.pipelines: List[List[List[str]]] = []
        self.envs: List[dict | None] = []
        self.archive_size = 4096
        self.dump_bytes = b"\x1f\x8b" + b"d" * 50 * 1024
        self.packed_file_sentinel: str | None = None
        self.packed_db_sentinel: str | None = None
        self.extract_restores_sentinel = True
        self.tool_output = ""

    def exists(self, tool: str) -> bool:
        return tool not in self.missing

    async def run(self, args, *, cwd=None, env=None) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        self.envs.append(env)
        cwd = Path(cwd)

        if "-cpzf" in args:
            sentinel = cwd / SENTINEL_FILE_NAME
            self.packed_file_sentinel = sentinel.read_text() if sentinel.exists() else None
            (cwd / args[2]).write_bytes(b"t" * self.archive_size)
        elif "-xzf" in args and self.extract_restores_sentinel:
            (cwd / SENTINEL_FILE_NAME).write_text(self.packed_file_sentinel or "backup")

        return CommandResult(args=[args], returncode=0, output=self.tool_output)

    async def run_pipeline(
        self, commands, *, cwd=None, env=None, stdout_path=None
    ) -> CommandResult:
        pipeline = [list(c) for c in commands]
        self.pipelines.append(pipeline)
        self.envs.append(env)

        if stdout_path is not None:
            self.packed_db_sentinel = self.database_sentinel.value
            Path(stdout_path).write_bytes(self.dump_bytes)
        else:
            self.database_sentinel.value = self.packed_db_sentinel or "backup"

        return CommandResult(args=pipeline, returncode=0, output=self.tool_output)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def working_dir(temp_dir: Path) -> Path:
    """Application root with one folder to archive."""
    app = temp_dir / "app"
    (app / "uploads").mkdir(parents=True)
    (app / "uploads" / "avatar.png").write_bytes(b"png" * 100)
    return app


@pytest.fixture
def test_config(temp_dir: Path, working_dir: Path) -> BackupConfig:
    """Create a test configuration."""
    return BackupConfig(
        backup_path="backups",
        local_disk_root=temp_dir / "disk",
        folders=["uploads"],
        retention_days=30,
        working_dir=working_dir,
        database=DatabaseConnection(
            host="db.internal",
            port=3306,
            user="app",
            password="s3cret",
            database="app",
        ),
    )


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def fake_db_sentinel() -> FakeDatabaseSentinel:
    return FakeDatabaseSentinel()


@pytest.fixture
def fake_runner(fake_db_sentinel: FakeDatabaseSentinel) -> FakeRunner:
    return FakeRunner(fake_db_sentinel)


@pytest_asyncio.fixture
async def backup_state(test_config, memory_storage, fake_runner, fake_db_sentinel):
    """Create initialized backup state wired to the fakes."""
    from bkman.core import initialize_backup_state

    state = await initialize_backup_state(
        test_config,
        storage=memory_storage,
        runner=fake_runner,
        database_sentinel=fake_db_sentinel,
    )
    yield state
