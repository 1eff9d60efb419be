# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman FastAPI Integration - Plugin for FastAPI applications.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints for create / restore / list / delete
- Scheduled backup runs
- Health checks
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import List

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from bkman.backup import (
    create_backup,
    delete_backups,
    delete_old_backups,
    get_backups,
    restore_backups,
)
from bkman.config import BackupConfig
from bkman.core import BackupState, initialize_backup_state, shutdown_backup_state
from bkman.errors import explain_invalid_only_option
from bkman.storage.base import ArtifactKind

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


class CreateBackupRequest(BaseModel):
    """Body of POST /backups."""

    only: str | None = Field(default=None, description="'files' or 'db'")


class BackupNamesRequest(BaseModel):
    """Body of the restore and delete endpoints."""

    names: List[str] = Field(min_length=1)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the BKMAN_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("BKMAN_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="BKMAN_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _parse_only(value: str | None) -> ArtifactKind | None:
    if value is None:
        return None
    try:
        return ArtifactKind.parse(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=explain_invalid_only_option(value))


def register_bkman_routes(
    app: FastAPI,
    config: BackupConfig,
    state: BackupState,
    prefix: str = "/admin/bkman",
) -> None:
    """
    Register bkman admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: bkman configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/bkman)
    """

    @app.get(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def list_backups() -> list:
        """
        List stored backups, newest first.
        """
        entries = await get_backups(config, state)
        return [entry.to_dict() for entry in entries]

    @app.post(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: CreateBackupRequest | None = None) -> dict:
        """
        Run a backup cycle now.

        Returns {"f": bool, "d": bool} plus any errors.
        """
        only = _parse_only(request.only if request else None)
        status = await create_backup(config, state, only=only)
        return {"run_id": status.run_id, **status.to_dict()}

    @app.post(f"{prefix}/backups/restore", dependencies=[Depends(verify_api_key)])
    async def restore(request: BackupNamesRequest) -> list:
        """
        Restore the named backups, in order.

        Each item reports its own success; one failure does not stop the rest.
        """
        results = await restore_backups(config, state, request.names)
        return [item.to_dict() for item in results]

    @app.post(f"{prefix}/backups/delete", dependencies=[Depends(verify_api_key)])
    async def delete(request: BackupNamesRequest) -> dict:
        """
        Delete the named backups.
        """
        result = await delete_backups(config, state, request.names)
        return {
            "ok": result.ok,
            "deleted": result.deleted,
            "missing": result.missing,
            "failed": result.failed,
        }

    @app.post(f"{prefix}/backups/prune", dependencies=[Depends(verify_api_key)])
    async def prune(only: str | None = None) -> dict:
        """
        Run the retention sweep without creating a backup.
        """
        result = await delete_old_backups(config, state, kind=_parse_only(only))
        return {
            "deleted": result.deleted,
            "kept": result.kept,
            "failed": result.failed,
            "unparseable": result.unparseable,
            "bytes_freed": result.bytes_freed,
        }

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get current backup status.

        Returns last run time, counters and the last cycle result.
        """
        last_status = state["last_status"]
        return {
            "last_run_at": (
                state["last_run_at"].isoformat() if state["last_run_at"] else None
            ),
            "last_status": last_status.to_dict() if last_status else None,
            "total_runs": state["total_runs"],
            "total_restores": state["total_restores"],
            "last_error": state["last_error"],
            "disk": config.disk.value,
            "backup_path": config.backup_prefix,
            "retention_days": config.retention_days,
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies the backup disk and the external tools.
        """
        storage_ok = False
        storage_error = None
        try:
            await state["storage"].list(config.backup_prefix)
            storage_ok = True
        except Exception as e:
            storage_error = str(e)

        tools = {
            name: state["runner"].exists(getattr(config.tool_paths, name))
            for name in ("tar", "mysqldump", "mysql", "zcat", "gzip")
        }

        status = "healthy"
        if not storage_ok or not all(tools.values()):
            status = "degraded"
        if not storage_ok and not any(tools.values()):
            status = "unhealthy"

        return {
            "status": status,
            "storage_reachable": storage_ok,
            "storage_error": storage_error,
            "tools": tools,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return {
            "disk": config.disk.value,
            "backup_path": config.backup_prefix,
            "s3_bucket": config.s3_bucket,
            "s3_region": config.s3_region,
            "date_suffix_format": config.date_suffix_format,
            "files_enabled": config.files_enabled,
            "folders": config.folders,
            "database_enabled": config.database_enabled,
            "tables": config.tables,
            "retention_days": config.retention_days,
            "database": {
                "host": config.database.host,
                "port": config.database.port,
                "user": config.database.user,
                "database": config.database.database,
                "password": "***" if config.database.password else "",
            },
            "command_timeout_seconds": config.command_timeout_seconds,
            "memory_limit_mb": config.memory_limit_mb,
            "schedule_cron": config.schedule_cron,
        }


def setup_bkman_plugin(
    app: FastAPI,
    config: BackupConfig,
    prefix: str = "/admin/bkman",
) -> None:
    """
    Set up bkman plugin with lifespan management.

    This is the main entry point for integrating bkman with a FastAPI app.
    It sets up:
    - Startup/shutdown lifecycle events
    - Admin endpoints
    - Scheduled backups if configured

    Args:
        app: FastAPI application
        config: bkman configuration
        prefix: URL prefix for admin endpoints
    """
    # Store state in app.state for access across requests
    app.state.bkman_config = config
    app.state.bkman_state = None

    @app.on_event("startup")
    async def startup():
        """Initialize bkman on app startup."""
        logger.info("bkman_plugin_starting", disk=config.disk.value)

        state = await initialize_backup_state(config)
        app.state.bkman_state = state

        register_bkman_routes(app, config, state, prefix)

        if config.schedule_cron:
            app.state.bkman_scheduler = _setup_scheduled_task(config, state)

        logger.info("bkman_plugin_started")

    @app.on_event("shutdown")
    async def shutdown():
        """Cleanup bkman on app shutdown."""
        logger.info("bkman_plugin_stopping")

        scheduler = getattr(app.state, "bkman_scheduler", None)
        if scheduler is not None:
            scheduler.shutdown(wait=False)

        state = app.state.bkman_state
        if state:
            await shutdown_backup_state(state)

        logger.info("bkman_plugin_stopped")


def _setup_scheduled_task(config: BackupConfig, state: BackupState):
    """Set up APScheduler for a daily backup run. Returns the scheduler or None."""
    try:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.cron import CronTrigger

        scheduler = AsyncIOScheduler(timezone="UTC")

        # Parse HH:MM format
        hour, minute = map(int, config.schedule_cron.split(":"))

        async def scheduled_backup():
            """Run scheduled backup cycle."""
            logger.info("scheduled_backup_starting")
            try:
                status = await create_backup(config, state)
                logger.info("scheduled_backup_completed", **status.to_dict())
            except Exception as e:
                logger.error("scheduled_backup_failed", error=str(e))

        scheduler.add_job(
            scheduled_backup,
            trigger=CronTrigger(hour=hour, minute=minute),
            id="bkman_scheduled",
            replace_existing=True,
        )
        scheduler.start()

        logger.info(
            "scheduler_started",
            schedule=config.schedule_cron,
            next_run=str(scheduler.get_job("bkman_scheduled").next_run_time),
        )
        return scheduler

    except ImportError:
        logger.warning(
            "apscheduler_not_installed",
            message="Install bkman[scheduler] for scheduled backups",
        )
    except Exception as e:
        logger.error("scheduler_setup_failed", error=str(e))
    return None


@asynccontextmanager
async def bkman_lifespan(app: FastAPI, config: BackupConfig, prefix: str = "/admin/bkman"):
    """
    Alternative lifespan context manager for FastAPI.

    Use this instead of setup_bkman_plugin if you prefer the
    lifespan pattern:

        app = FastAPI(lifespan=lambda app: bkman_lifespan(app, config))
    """
    logger.info("bkman_lifespan_starting")

    state = await initialize_backup_state(config)
    app.state.bkman_state = state
    app.state.bkman_config = config

    register_bkman_routes(app, config, state, prefix)

    scheduler = _setup_scheduled_task(config, state) if config.schedule_cron else None

    logger.info("bkman_lifespan_started")

    try:
        yield
    finally:
        logger.info("bkman_lifespan_stopping")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await shutdown_backup_state(state)
        logger.info("bkman_lifespan_stopped")


def get_bkman_state(app: FastAPI) -> BackupState:
    """
    Get bkman state from a FastAPI app.

    Raises:
        RuntimeError: If bkman not initialized
    """
    state = getattr(app.state, "bkman_state", None)
    if not state:
        raise RuntimeError("bkman not initialized. Call setup_bkman_plugin first.")
    return state


def get_bkman_config(app: FastAPI) -> BackupConfig:
    """
    Get bkman config from a FastAPI app.

    Raises:
        RuntimeError: If bkman not initialized
    """
    config = getattr(app.state, "bkman_config", None)
    if not config:
        raise RuntimeError("bkman not initialized. Call setup_bkman_plugin first.")
    return config
