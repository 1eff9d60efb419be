# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command Runner - Invocation of external backup tools.

Tools are started from argument lists, never through a shell, so
configuration values (paths, table names) cannot inject commands.
Pipelines such as `mysqldump | gzip > file` are built from OS pipes.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import structlog

from bkman.config import ExecutionLimits
from bkman.exceptions import ToolExecutionError, ToolNotFoundError

logger = structlog.get_logger()

# Captured output attached to log events is truncated to this length
LOG_OUTPUT_LIMIT = 2000

_SECRET_ENV_KEYS = ("MYSQL_PWD",)


@dataclass
class CommandResult:
    """Outcome of one command or pipeline."""

    args: List[List[str]]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def redact_command(args: Sequence[str]) -> List[str]:
    """
    Mask credentials in a command line before it is logged.

    Handles --password=..., -p<secret> and --password <secret>.
    """
    redacted: List[str] = []
    mask_next = False
    for arg in args:
        if mask_next:
            redacted.append("***")
            mask_next = False
        elif arg.startswith("--password="):
            redacted.append("--password=***")
        elif arg == "--password":
            redacted.append(arg)
            mask_next = True
        elif arg.startswith("-p") and len(arg) > 2 and not arg.startswith("--"):
            redacted.append("-p***")
        else:
            redacted.append(arg)
    return redacted


def redact_env(env: Mapping[str, str] | None) -> Dict[str, str]:
    """Return only the extra environment keys, with secrets masked."""
    if not env:
        return {}
    return {k: ("***" if k in _SECRET_ENV_KEYS else v) for k, v in env.items()}


def truncate_output(output: str, limit: int = LOG_OUTPUT_LIMIT) -> str:
    if len(output) <= limit:
        return output
    return output[:limit] + f"... [{len(output) - limit} more characters]"


def _memory_limiter(limit_bytes: int) -> Callable[[], None]:
    """preexec_fn applying an address-space ceiling in the child only."""

    def apply() -> None:
        import resource

        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return apply


class CommandRunner:
    """
    Runs external tools with an explicit execution context.

    Limits from ExecutionLimits are applied to child processes; the
    calling process keeps its own limits untouched.
    """

    def __init__(self, limits: ExecutionLimits | None = None):
        self.limits = limits or ExecutionLimits()

    def exists(self, tool: str) -> bool:
        """Check whether an executable is resolvable on the search path."""
        return shutil.which(tool) is not None

    def _spawn_kwargs(self) -> Dict[str, Any]:
        if self.limits.memory_limit_bytes and os.name == "posix":
            return {"preexec_fn": _memory_limiter(self.limits.memory_limit_bytes)}
        if self.limits.memory_limit_bytes:
            logger.warning(
                "memory_limit_unsupported",
                platform=os.name,
                memory_limit_bytes=self.limits.memory_limit_bytes,
            )
        return {}

    @staticmethod
    def _merge_env(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if not env:
            return None
        return {**os.environ, **env}

    async def _wait(self, awaitable: Any, procs: List[asyncio.subprocess.Process], args: Any) -> Any:
        try:
            if self.limits.timeout_seconds is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.limits.timeout_seconds)
        except asyncio.TimeoutError:
            for proc in procs:
                if proc.returncode is None:
                    proc.kill()
            for proc in procs:
                await proc.wait()
            raise ToolExecutionError(
                f"Command timed out after {self.limits.timeout_seconds} seconds",
                details={"command": args},
            )

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """
        Run one command and capture stdout and stderr as one text blob.

        Blocks (awaits) until the process exits.
        """
        command = list(args)
        logger.info(
            "command_started",
            command=redact_command(command),
            cwd=str(cwd) if cwd else None,
            env=redact_env(env),
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
                env=self._merge_env(env),
                **self._spawn_kwargs(),
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(
                f"Command not found: {command[0]}",
                details={"command": redact_command(command)},
            ) from e

        stdout, _ = await self._wait(proc.communicate(), [proc], redact_command(command))
        output = (stdout or b"").decode("utf-8", errors="replace")

        logger.info(
            "command_finished",
            command=redact_command(command),
            returncode=proc.returncode,
            output=truncate_output(output.strip()) or None,
        )
        return CommandResult(args=[command], returncode=proc.returncode or 0, output=output)

    async def run_pipeline(
        self,
        commands: Sequence[Sequence[str]],
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        """
        Run commands connected stdout-to-stdin, like a shell pipeline.

        The captured output holds every process's stderr and, when
        stdout_path is not given, the last process's stdout. The
        returncode is the first non-zero exit status, or 0.
        """
        pipeline = [list(c) for c in commands]
        if not pipeline:
            raise ValueError("pipeline needs at least one command")

        redacted = [redact_command(c) for c in pipeline]
        logger.info(
            "pipeline_started",
            commands=redacted,
            cwd=str(cwd) if cwd else None,
            stdout=str(stdout_path) if stdout_path else None,
            env=redact_env(env),
        )

        merged_env = self._merge_env(env)
        procs: List[asyncio.subprocess.Process] = []
        opened: List[Any] = []
        previous_read: Any = None

        try:
            for index, command in enumerate(pipeline):
                is_last = index == len(pipeline) - 1
                write_fd = None
                if is_last:
                    if stdout_path is not None:
                        stdout: Any = open(stdout_path, "wb")
                        opened.append(stdout)
                    else:
                        stdout = asyncio.subprocess.PIPE
                    next_read = None
                else:
                    next_read, write_fd = os.pipe()
                    stdout = write_fd

                try:
                    proc = await asyncio.create_subprocess_exec(
                        *command,
                        stdin=previous_read,
                        stdout=stdout,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=cwd,
                        env=merged_env,
                        **self._spawn_kwargs(),
                    )
                except FileNotFoundError as e:
                    if next_read is not None:
                        os.close(next_read)
                    raise ToolNotFoundError(
                        f"Command not found: {command[0]}",
                        details={"command": redact_command(command)},
                    ) from e
                finally:
                    # The parent must drop its copies so EOF propagates
                    if isinstance(previous_read, int):
                        os.close(previous_read)
                    if write_fd is not None:
                        os.close(write_fd)

                procs.append(proc)
                previous_read = next_read

            results = await self._wait(
                asyncio.gather(*(p.communicate() for p in procs)), procs, redacted
            )
        except BaseException:
            for proc in procs:
                if proc.returncode is None:
                    proc.kill()
            for proc in procs:
                await proc.wait()
            raise
        finally:
            for handle in opened:
                handle.close()

        output_parts: List[str] = []
        for stdout_bytes, stderr_bytes in results:
            if stderr_bytes:
                output_parts.append(stderr_bytes.decode("utf-8", errors="replace"))
            if stdout_bytes:
                output_parts.append(stdout_bytes.decode("utf-8", errors="replace"))
        output = "".join(output_parts)

        returncode = next((p.returncode for p in procs if p.returncode), 0)

        logger.info(
            "pipeline_finished",
            commands=redacted,
            returncodes=[p.returncode for p in procs],
            output=truncate_output(output.strip()) or None,
        )
        return CommandResult(args=pipeline, returncode=returncode or 0, output=output)
