"""Celery tasks for Meta sync, performance sync and optimization cycles."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from adpilot.celery_app import celery_app
from adpilot.config import get_settings
from adpilot.database import make_engine, session_scope
from adpilot.meta.client import build_graph_client
from adpilot.meta.errors import AuthExpiredError, MetaAPIError, SyncError
from adpilot.models.meta_ads import ConnectionStatus, MetaConnection
from adpilot.redis_client import create_redis
from adpilot.services.locks import hold_lock, lock_key
from adpilot.services.optimizer import OptimizerConfig, cycle_lock_ttl, run_locked_cycle
from adpilot.services.sync_service import MetaSyncService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _task_resources():
    """Per-run engine, Redis and Graph client; each task runs on a fresh event loop."""
    settings = get_settings()
    engine = make_engine(settings.async_database_url, poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_client = create_redis(settings.redis_url)
    client = build_graph_client(redis_client, settings)
    try:
        yield settings, factory, redis_client, client
    finally:
        await client.aclose()
        await redis_client.aclose()
        await engine.dispose()


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _active_connection_ids() -> list[str]:
    async with _task_resources() as (_, factory, _redis, _client):
        async with session_scope(factory) as db:
            result = await db.execute(
                select(MetaConnection.id).where(MetaConnection.status == ConnectionStatus.ACTIVE.value)
            )
            return [str(row[0]) for row in result.all()]


# ---------------------------------------------------------------------------
# Entity sync
# ---------------------------------------------------------------------------

async def _sync_connection(connection_id: str) -> dict:
    async with _task_resources() as (settings, factory, redis_client, client):
        key = lock_key(settings.lock_namespace, f"sync:{connection_id}")
        ttl = settings.meta_sync_interval_minutes * 60 + 300
        async with hold_lock(redis_client, key, ttl) as acquired:
            if not acquired:
                return {"status": "skipped"}
            async with session_scope(factory) as db:
                connection = await db.get(MetaConnection, uuid.UUID(connection_id))
                if connection is None or connection.status != ConnectionStatus.ACTIVE.value:
                    logger.info("[celery-sync] Connection %s not active, skipping", connection_id)
                    return {"status": "inactive"}
                try:
                    stats = await MetaSyncService(db, client).pull(connection)
                except AuthExpiredError as e:
                    return {"status": "expired", "error": e.message}
                except MetaAPIError as e:
                    logger.error("[celery-sync] Sync failed for connection %s: %r", connection_id, e)
                    return {"status": "failed", "error": e.message, "kind": e.kind.value}
                return {"status": "ok", **stats.as_dict()}


@celery_app.task(name="adpilot.tasks.meta_tasks.sync_connection")
def sync_connection(connection_id: str):
    """Celery task: pull campaigns / ad sets / ads for one connection."""
    result = _run(_sync_connection(connection_id))
    logger.info("[celery-sync] Meta sync done for connection %s: %s", connection_id, result)
    return result


@celery_app.task(name="adpilot.tasks.meta_tasks.sync_all_connections")
def sync_all_connections():
    """Celery beat task: dispatch a sync for every ACTIVE connection."""
    connection_ids = _run(_active_connection_ids())
    for cid in connection_ids:
        sync_connection.delay(cid)
    logger.info("[celery-sync] Dispatched Meta sync for %d connections", len(connection_ids))
    return {"connections_dispatched": len(connection_ids)}


# ---------------------------------------------------------------------------
# Performance sync
# ---------------------------------------------------------------------------

async def _sync_performance(connection_id: str, date_preset: str) -> dict:
    async with _task_resources() as (settings, factory, redis_client, client):
        key = lock_key(settings.lock_namespace, f"performance:{connection_id}")
        ttl = settings.meta_performance_sync_interval_minutes * 60 + 300
        async with hold_lock(redis_client, key, ttl) as acquired:
            if not acquired:
                return {"status": "skipped"}
            async with session_scope(factory) as db:
                connection = await db.get(MetaConnection, uuid.UUID(connection_id))
                if connection is None or connection.status != ConnectionStatus.ACTIVE.value:
                    return {"status": "inactive"}
                try:
                    counts = await MetaSyncService(db, client).pull_performance(connection, date_preset)
                except AuthExpiredError as e:
                    return {"status": "expired", "error": e.message}
                return {"status": "ok", **counts}


@celery_app.task(name="adpilot.tasks.meta_tasks.sync_performance")
def sync_performance(connection_id: str, date_preset: str = "last_7d"):
    """Celery task: upsert daily performance snapshots for one connection."""
    result = _run(_sync_performance(connection_id, date_preset))
    logger.info("[celery-sync] Performance sync done for connection %s: %s", connection_id, result)
    return result


@celery_app.task(name="adpilot.tasks.meta_tasks.sync_all_performance")
def sync_all_performance():
    connection_ids = _run(_active_connection_ids())
    for cid in connection_ids:
        sync_performance.delay(cid)
    logger.info("[celery-sync] Dispatched performance sync for %d connections", len(connection_ids))
    return {"connections_dispatched": len(connection_ids)}


# ---------------------------------------------------------------------------
# Optimization
# ---------------------------------------------------------------------------

async def _run_optimization(connection_id: str) -> dict:
    async with _task_resources() as (settings, factory, redis_client, client):
        config = OptimizerConfig.from_settings(settings)
        async with session_scope(factory) as db:
            try:
                results = await run_locked_cycle(
                    redis_client, db, client, uuid.UUID(connection_id), config=config, settings=settings,
                )
            except AuthExpiredError as e:
                return {"status": "expired", "error": e.message}
            except (MetaAPIError, SyncError) as e:
                logger.error("[optimizer] Cycle failed for connection %s: %r", connection_id, e)
                return {"status": "failed", "error": str(e)}
            if results is None:
                return {"status": "skipped"}
            return {"status": "ok", "mode": config.mode, "actions": len(results)}


@celery_app.task(name="adpilot.tasks.meta_tasks.run_optimization")
def run_optimization(connection_id: str):
    """Celery task: one optimization cycle for one connection (lock-guarded)."""
    result = _run(_run_optimization(connection_id))
    logger.info("[optimizer] Cycle for connection %s: %s", connection_id, result)
    return result


@celery_app.task(name="adpilot.tasks.meta_tasks.run_optimization_cycles")
def run_optimization_cycles():
    connection_ids = _run(_active_connection_ids())
    for cid in connection_ids:
        run_optimization.delay(cid)
    logger.info(
        "[optimizer] Dispatched cycles for %d connections (lock ttl %ss)",
        len(connection_ids), cycle_lock_ttl(get_settings().optimization_interval_minutes),
    )
    return {"connections_dispatched": len(connection_ids)}
