"""Read-only view of the optimization audit trail."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpilot.database import get_db
from adpilot.models.meta_ads import OptimizationLog

router = APIRouter()


class OptimizationLogResponse(BaseModel):
    id: str
    account_id: str
    action: str
    entity_type: str
    entity_id: str
    rule_id: str | None = None
    reason: str | None = None
    previous_value: str | None = None
    new_value: str | None = None
    severity: str
    success: bool
    message: str
    details: dict = {}
    executed_at: datetime


@router.get("/logs", response_model=list[OptimizationLogResponse])
async def list_optimization_logs(
    account_id: str | None = Query(None),
    action: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(OptimizationLog).order_by(OptimizationLog.executed_at.desc()).limit(limit)
    if account_id:
        query = query.where(OptimizationLog.account_id == account_id)
    if action:
        query = query.where(OptimizationLog.action == action)
    result = await db.execute(query)
    return [
        OptimizationLogResponse(
            id=str(log.id),
            account_id=log.account_id,
            action=log.action,
            entity_type=log.entity_type,
            entity_id=log.entity_id,
            rule_id=log.rule_id,
            reason=log.reason,
            previous_value=log.previous_value,
            new_value=log.new_value,
            severity=log.severity,
            success=log.success,
            message=log.message,
            details=log.details or {},
            executed_at=log.executed_at,
        )
        for log in result.scalars().all()
    ]
