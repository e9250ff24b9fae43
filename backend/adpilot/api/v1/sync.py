"""Operator triggers for background sync and optimization runs."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.database import get_db
from adpilot.models.meta_ads import ConnectionStatus, MetaConnection

router = APIRouter()


async def _active_connection(db: AsyncSession, connection_id: uuid.UUID) -> MetaConnection:
    connection = await db.get(MetaConnection, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    if connection.status != ConnectionStatus.ACTIVE.value:
        raise HTTPException(status_code=409, detail=f"Connection is {connection.status}")
    return connection


@router.post("/{connection_id}", status_code=202)
async def trigger_sync(connection_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    from adpilot.tasks.meta_tasks import sync_connection

    await _active_connection(db, connection_id)
    task = sync_connection.delay(str(connection_id))
    return {"queued": True, "task_id": task.id}


@router.post("/{connection_id}/performance", status_code=202)
async def trigger_performance_sync(
    connection_id: uuid.UUID,
    date_preset: str = Query("last_7d"),
    db: AsyncSession = Depends(get_db),
):
    from adpilot.tasks.meta_tasks import sync_performance

    await _active_connection(db, connection_id)
    task = sync_performance.delay(str(connection_id), date_preset)
    return {"queued": True, "task_id": task.id}


@router.post("/{connection_id}/optimize", status_code=202)
async def trigger_optimization(connection_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    from adpilot.tasks.meta_tasks import run_optimization

    await _active_connection(db, connection_id)
    task = run_optimization.delay(str(connection_id))
    return {"queued": True, "task_id": task.id}
