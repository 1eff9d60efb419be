# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for bkman.

These tests verify the core guarantees:
1. Verification - a run only counts once its sentinel and artifact check out
2. Size floor - an implausibly small dump always fails the cycle
3. Preconditions - a missing tool aborts before the backup disk is touched
4. Idempotent naming - same-day runs overwrite, never duplicate
5. Retention - artifacts are deleted iff their age reaches the threshold
6. Restore isolation - one failed item never stops the others

These tests MUST pass before any production deployment.
"""

import gzip
import os
import time
from datetime import datetime, timedelta, timezone, UTC
from pathlib import Path

import pytest

from bkman.backup import create_backup, delete_old_backups, restore_backups
from bkman.core import backup_names
from bkman.sentinel import SENTINEL_FILE_NAME
from bkman.storage.base import ArtifactKind

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def _name(kind: str, days_ago: int, extension: str) -> str:
    day = (NOW - timedelta(days=days_ago)).date()
    return f"{kind}_{day.isoformat()}.{extension}"


# ============================================================================
# Test 1: VERIFICATION
# ============================================================================

@pytest.mark.asyncio
async def test_successful_cycle_verifies_both_branches(
    test_config, backup_state, memory_storage, fake_runner, fake_db_sentinel
):
    """
    A full cycle uploads both artifacts and reports {f: true, d: true}.

    The file sentinel is packed into the archive with "backup" and the
    database sentinel reads "backup" right after the cycle.
    """
    status = await create_backup(test_config, backup_state)

    files_name, database_name = backup_names(test_config)
    assert status.ok
    assert status.to_dict() == {"f": True, "d": True}
    assert f"backups/{files_name}" in memory_storage.objects
    assert f"backups/{database_name}" in memory_storage.objects

    assert fake_runner.packed_file_sentinel == "backup"
    assert await backup_state["sentinel"].check(ArtifactKind.DATABASE) == "backup"

    # Scratch files and the sentinel are gone from the working directory
    assert not (test_config.working_dir / files_name).exists()
    assert not (test_config.working_dir / database_name).exists()
    assert not (test_config.working_dir / SENTINEL_FILE_NAME).exists()

    assert backup_state["total_runs"] == 1
    assert backup_state["last_error"] is None


@pytest.mark.asyncio
async def test_archive_command_packs_sentinel_with_folders(
    test_config, backup_state, fake_runner
):
    """tar receives the folders and the sentinel as plain arguments after '--'."""
    await create_backup(test_config, backup_state, only=ArtifactKind.FILES)

    files_name, _ = backup_names(test_config)
    assert fake_runner.calls == [
        ["tar", "-cpzf", files_name, "--", "uploads", SENTINEL_FILE_NAME]
    ]


@pytest.mark.asyncio
async def test_database_only_cycle_has_no_errors_key(
    test_config, memory_storage, fake_runner, fake_db_sentinel
):
    """
    Files disabled, database enabled, 50 KB dump -> {f: true, d: true}.
    """
    from bkman.core import initialize_backup_state

    config = test_config.with_updates(files_enabled=False)
    state = await initialize_backup_state(
        config,
        storage=memory_storage,
        runner=fake_runner,
        database_sentinel=fake_db_sentinel,
    )

    status = await create_backup(config, state)

    assert status.files_ok is None
    assert status.database_ok is True
    assert status.to_dict() == {"f": True, "d": True}
    assert "errors" not in status.to_dict()
    assert fake_runner.calls == []


@pytest.mark.asyncio
async def test_empty_folder_list_reports_files_failure(
    test_config, memory_storage, fake_runner, fake_db_sentinel
):
    """An enabled files branch with nothing to archive fails the post-run check."""
    from bkman.core import initialize_backup_state

    config = test_config.with_updates(folders=[], database_enabled=False)
    state = await initialize_backup_state(
        config,
        storage=memory_storage,
        runner=fake_runner,
        database_sentinel=fake_db_sentinel,
    )

    status = await create_backup(config, state)

    assert status.fatal_error is None
    assert status.files_ok is False
    assert status.to_dict()["f"] is False
    assert any("does not exist" in e for e in status.errors)
    assert fake_runner.calls == []


@pytest.mark.asyncio
async def test_small_stored_archive_fails_verification(
    test_config, backup_state, fake_runner
):
    """An artifact of exactly 1024 bytes is not above the floor."""
    fake_runner.archive_size = 1024

    status = await create_backup(test_config, backup_state, only=ArtifactKind.FILES)

    assert status.files_ok is False
    assert any("too small" in e for e in status.errors)


# ============================================================================
# Test 2: SIZE FLOOR
# ============================================================================

@pytest.mark.asyncio
async def test_small_dump_always_fails_cycle(
    test_config, backup_state, memory_storage, fake_runner
):
    """
    CRITICAL: a dump under 1024 bytes yields database false and an error
    entry, even though the tools exited cleanly.
    """
    fake_runner.dump_bytes = gzip.compress(b"mysqldump: Got error: 1045: Access denied")

    status = await create_backup(test_config, backup_state, only=ArtifactKind.DATABASE)

    _, database_name = backup_names(test_config)
    assert status.database_ok is False
    assert status.to_dict()["d"] is False
    assert status.errors
    assert status.fatal_error_type == "VerificationError"
    assert "Access denied" in status.fatal_error
    assert f"backups/{database_name}" not in memory_storage.objects
    assert not (test_config.working_dir / database_name).exists()


@pytest.mark.asyncio
async def test_fatal_failure_skips_pruning(test_config, backup_state, memory_storage, fake_runner):
    """A failed cycle never deletes old backups."""
    old = f"backups/{_name('d', 400, 'gz')}"
    memory_storage.put(old)
    fake_runner.dump_bytes = b"tiny"

    status = await create_backup(test_config, backup_state)

    assert status.fatal_error is not None
    assert status.pruned == []
    assert old in memory_storage.objects


@pytest.mark.asyncio
async def test_corrupt_small_dump_reports_size_floor(
    test_config, backup_state, memory_storage, fake_runner
):
    """A gzip header over a broken deflate stream still fails on the size floor."""
    fake_runner.dump_bytes = b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\x03" + b"\xff" * 40

    status = await create_backup(test_config, backup_state, only=ArtifactKind.DATABASE)

    _, database_name = backup_names(test_config)
    assert status.database_ok is False
    assert status.fatal_error_type == "VerificationError"
    assert status.fatal_error in status.errors
    assert "suspiciously small" in status.fatal_error
    assert f"backups/{database_name}" not in memory_storage.objects


# ============================================================================
# Test 3: PRECONDITIONS
# ============================================================================

@pytest.mark.asyncio
async def test_missing_archive_tool_leaves_remote_unchanged(
    test_config, backup_state, memory_storage, fake_runner
):
    """
    CRITICAL: with tar missing, the cycle aborts with ToolNotFoundError
    before any delete or upload, and the database branch never runs.
    """
    files_name, _ = backup_names(test_config)
    memory_storage.put(f"backups/{files_name}", b"previous" * 500)
    memory_storage.put(f"backups/{_name('d', 400, 'gz')}")
    before = dict(memory_storage.objects)
    fake_runner.missing = {"tar"}

    status = await create_backup(test_config, backup_state)

    assert status.fatal_error_type == "ToolNotFoundError"
    assert status.to_dict()["f"] is False
    assert status.to_dict()["d"] is False
    assert memory_storage.objects == before
    assert memory_storage.operations == []
    assert fake_runner.pipelines == []


@pytest.mark.asyncio
async def test_missing_database_name_is_configuration_error(
    test_config, memory_storage, fake_runner, fake_db_sentinel
):
    from dataclasses import replace

    from bkman.core import initialize_backup_state

    config = test_config.with_updates(
        files_enabled=False,
        database=replace(test_config.database, database=""),
    )
    state = await initialize_backup_state(
        config,
        storage=memory_storage,
        runner=fake_runner,
        database_sentinel=fake_db_sentinel,
    )

    status = await create_backup(config, state)

    assert status.fatal_error_type == "ConfigurationError"
    assert fake_db_sentinel.armed == []
    assert fake_runner.pipelines == []


@pytest.mark.asyncio
async def test_dump_password_never_in_arguments(test_config, backup_state, fake_runner):
    """The password travels in MYSQL_PWD, never in argv."""
    await create_backup(test_config, backup_state, only=ArtifactKind.DATABASE)

    dump_command, gzip_command = fake_runner.pipelines[0]
    assert not any("s3cret" in arg for arg in dump_command)
    assert "--single-transaction" in dump_command
    assert "--skip-ssl" in dump_command
    assert gzip_command == ["gzip", "-c"]
    assert {"MYSQL_PWD": "s3cret"} in fake_runner.envs


# ============================================================================
# Test 4: IDEMPOTENT NAMING
# ============================================================================

@pytest.mark.asyncio
async def test_same_day_runs_overwrite(test_config, backup_state, memory_storage, fake_runner):
    """Two runs on one day leave one artifact per kind, holding the second run."""
    await create_backup(test_config, backup_state)
    fake_runner.archive_size = 8192
    await create_backup(test_config, backup_state)

    files_name, database_name = backup_names(test_config)
    assert sorted(memory_storage.objects) == sorted(
        [f"backups/{files_name}", f"backups/{database_name}"]
    )
    assert len(memory_storage.objects[f"backups/{files_name}"]) == 8192
    assert backup_state["total_runs"] == 2


def test_backup_names_use_date_suffix(test_config):
    morning = datetime(2024, 1, 31, 1, 0, tzinfo=UTC)
    evening = datetime(2024, 1, 31, 23, 59, tzinfo=UTC)

    assert backup_names(test_config, morning) == ("f_2024-01-31.tar", "d_2024-01-31.gz")
    assert backup_names(test_config, morning) == backup_names(test_config, evening)


def test_backup_names_stamp_the_utc_date(test_config):
    """A local clock past midnight still names the artifact by the UTC day."""
    local = datetime(2026, 10, 19, 4, 0, tzinfo=timezone(timedelta(hours=14)))

    assert backup_names(test_config, local) == ("f_2026-10-18.tar", "d_2026-10-18.gz")


# ============================================================================
# Test 5: RETENTION
# ============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "retention_days,age_days,deleted",
    [
        (30, 29, False),
        (30, 30, True),
        (30, 31, True),
        (7, 6, False),
        (0, 0, True),
    ],
)
async def test_retention_boundary_is_inclusive(
    test_config, backup_state, memory_storage, retention_days, age_days, deleted
):
    """An artifact is deleted iff its age in days is >= the threshold."""
    config = test_config.with_updates(retention_days=retention_days)
    path = f"backups/{_name('f', age_days, 'tar')}"
    memory_storage.put(path)

    result = await delete_old_backups(config, backup_state, now=NOW)

    assert (path not in memory_storage.objects) is deleted
    assert (len(result.deleted) == 1) is deleted


@pytest.mark.asyncio
async def test_retention_deletes_only_expired(test_config, backup_state, memory_storage):
    """Threshold 30: a 10-day-old and a 40-day-old artifact -> only the 40-day one goes."""
    recent = _name("d", 10, "gz")
    expired = _name("d", 40, "gz")
    memory_storage.put(f"backups/{recent}", b"r" * 3000)
    memory_storage.put(f"backups/{expired}", b"e" * 5000)

    result = await delete_old_backups(test_config, backup_state, now=NOW)

    assert result.deleted == [expired]
    assert result.kept == [recent]
    assert result.bytes_freed == 5000
    assert f"backups/{recent}" in memory_storage.objects


@pytest.mark.asyncio
async def test_retention_prefers_storage_timestamp(test_config, backup_state, memory_storage):
    """The modification time wins over the date in the name."""
    path = f"backups/{_name('f', 100, 'tar')}"
    memory_storage.put(path)
    memory_storage.last_modified[path] = NOW - timedelta(days=1)

    result = await delete_old_backups(test_config, backup_state, now=NOW)

    assert result.deleted == []
    assert path in memory_storage.objects


@pytest.mark.asyncio
async def test_retention_continues_past_failures(test_config, backup_state, memory_storage):
    """A failed delete and an undatable name are recorded; the sweep goes on."""
    stuck = _name("f", 60, "tar")
    gone = _name("d", 60, "gz")
    memory_storage.put(f"backups/{stuck}")
    memory_storage.put(f"backups/{gone}")
    memory_storage.put("backups/notes.txt")
    memory_storage.failing_deletes.add(f"backups/{stuck}")

    result = await delete_old_backups(test_config, backup_state, now=NOW)

    assert result.failed == [stuck]
    assert result.deleted == [gone]
    assert result.unparseable == ["notes.txt"]
    assert "backups/notes.txt" in memory_storage.objects


@pytest.mark.asyncio
async def test_retention_kind_filter(test_config, backup_state, memory_storage):
    old_files = _name("f", 90, "tar")
    old_dump = _name("d", 90, "gz")
    memory_storage.put(f"backups/{old_files}")
    memory_storage.put(f"backups/{old_dump}")

    result = await delete_old_backups(
        test_config, backup_state, kind=ArtifactKind.DATABASE, now=NOW
    )

    assert result.deleted == [old_dump]
    assert f"backups/{old_files}" in memory_storage.objects


@pytest.fixture
def far_east_timezone():
    """Run with a local clock 14 hours ahead of UTC."""
    previous = os.environ.get("TZ")
    os.environ["TZ"] = "Pacific/Kiritimati"
    time.tzset()
    yield
    if previous is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = previous
    time.tzset()


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(time, "tzset"), reason="time.tzset not available")
@pytest.mark.parametrize("age_days,deleted", [(29, False), (30, True)])
async def test_retention_default_clock_ignores_local_timezone(
    test_config, backup_state, memory_storage, far_east_timezone, age_days, deleted
):
    """Names stamped today and swept with the default clock agree on the day."""
    files_name, _ = backup_names(test_config, datetime.now(UTC) - timedelta(days=age_days))
    memory_storage.put(f"backups/{files_name}")

    result = await delete_old_backups(test_config, backup_state)

    assert (files_name in result.deleted) is deleted
    assert (files_name in result.kept) is not deleted


@pytest.mark.asyncio
async def test_create_only_narrows_pruning(test_config, backup_state, memory_storage, fake_runner):
    """create --only db prunes database dumps only."""
    old_files = f"backups/{_name('f', 400, 'tar')}"
    old_dump = f"backups/{_name('d', 400, 'gz')}"
    memory_storage.put(old_files)
    memory_storage.put(old_dump)

    status = await create_backup(test_config, backup_state, only=ArtifactKind.DATABASE)

    assert status.ok
    assert old_files in memory_storage.objects
    assert old_dump not in memory_storage.objects
    assert status.pruned == [Path(old_dump).name]
    assert fake_runner.calls == []


# ============================================================================
# Test 6: RESTORE ISOLATION
# ============================================================================

@pytest.mark.asyncio
async def test_restore_missing_item_does_not_stop_next(
    test_config, backup_state, memory_storage, fake_runner
):
    """
    CRITICAL: restoring [f_2024-01-01.tar, d_2024-01-01.gz] with the files
    artifact missing yields a NotFound entry first and a real result second.
    """
    memory_storage.put("backups/d_2024-01-01.gz", b"\x1f\x8b" + b"x" * 4096)

    results = await restore_backups(
        test_config, backup_state, ["f_2024-01-01.tar", "d_2024-01-01.gz"]
    )

    assert len(results) == 2
    first, second = results
    assert first.ok is False
    assert first.error_type == "NotFoundError"
    assert first.to_dict()["f"] is False
    assert first.to_dict()["name"] == "f_2024-01-01.tar"
    assert second.ok is True
    assert second.to_dict() == {"d": True, "name": "d_2024-01-01.gz"}

    load_pipeline = fake_runner.pipelines[-1]
    assert load_pipeline[0] == ["zcat", "--", "d_2024-01-01.gz"]
    assert load_pipeline[1][-1] == "app"
    assert not (test_config.working_dir / "d_2024-01-01.gz").exists()
    assert backup_state["total_restores"] == 1


@pytest.mark.asyncio
async def test_restore_files_verified_by_packed_sentinel(
    test_config, backup_state, memory_storage, fake_runner
):
    memory_storage.put("backups/f_2024-01-01.tar", b"t" * 4096)

    results = await restore_backups(test_config, backup_state, ["f_2024-01-01.tar"])

    assert results[0].ok is True
    assert fake_runner.calls[-1] == ["tar", "-xzf", "f_2024-01-01.tar"]
    assert not (test_config.working_dir / "f_2024-01-01.tar").exists()
    assert not (test_config.working_dir / SENTINEL_FILE_NAME).exists()


@pytest.mark.asyncio
async def test_restore_unverified_when_sentinel_untouched(
    test_config, backup_state, memory_storage, fake_runner
):
    """If extraction never replaced the armed token, the item fails verification."""
    memory_storage.put("backups/f_2024-01-01.tar", b"t" * 4096)
    fake_runner.extract_restores_sentinel = False

    results = await restore_backups(test_config, backup_state, ["f_2024-01-01.tar"])

    assert results[0].ok is False
    assert results[0].error_type == "VerificationError"
    assert "restore" in results[0].error
    assert not (test_config.working_dir / SENTINEL_FILE_NAME).exists()


@pytest.mark.asyncio
async def test_restore_tool_error_output_fails_item(
    test_config, backup_state, memory_storage, fake_runner
):
    memory_storage.put("backups/d_2024-01-01.gz", b"x" * 4096)
    fake_runner.tool_output = "ERROR 1064 (42000) at line 1: You have an error in your SQL syntax"

    results = await restore_backups(test_config, backup_state, ["d_2024-01-01.gz"])

    assert results[0].ok is False
    assert results[0].error_type == "ToolExecutionError"
    assert not (test_config.working_dir / "d_2024-01-01.gz").exists()


@pytest.mark.asyncio
async def test_restore_rejects_unsafe_names(test_config, backup_state, memory_storage):
    results = await restore_backups(test_config, backup_state, ["../../etc/passwd", "-rf"])

    assert [r.error_type for r in results] == ["NotFoundError", "NotFoundError"]
    assert memory_storage.operations == []


@pytest.mark.asyncio
async def test_restore_missing_tool_is_recorded(
    test_config, backup_state, memory_storage, fake_runner
):
    memory_storage.put("backups/d_2024-01-01.gz", b"x" * 4096)
    fake_runner.missing = {"mysql"}

    results = await restore_backups(test_config, backup_state, ["d_2024-01-01.gz"])

    assert results[0].ok is False
    assert results[0].error_type == "ToolNotFoundError"
    assert fake_runner.pipelines == []
