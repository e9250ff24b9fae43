"""Campaign launch: enqueue, wait briefly, and answer inline or with a job id."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from adpilot.dependencies import get_launch_queue, get_wait_policy
from adpilot.rate_limit import limiter
from adpilot.schemas.launch import JobStatus, LaunchAccepted, LaunchJob, LaunchRequest, LaunchResult
from adpilot.services.launch_queue import LaunchQueue, LaunchWaitPolicy, submit_and_wait

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=LaunchResult, responses={202: {"model": LaunchAccepted}, 400: {"model": LaunchResult}})
@limiter.limit("5/minute")
async def launch_campaign(
    request: Request,
    body: LaunchRequest,
    queue: LaunchQueue = Depends(get_launch_queue),
    policy: LaunchWaitPolicy = Depends(get_wait_policy),
):
    outcome = await submit_and_wait(queue, body.model_dump(mode="json"), policy)

    if outcome.status == JobStatus.COMPLETED:
        return LaunchResult(success=True, **outcome.result)

    if outcome.status == JobStatus.FAILED:
        logger.warning("Launch job %s failed: %s", outcome.job_id, outcome.error)
        return JSONResponse(
            status_code=400,
            content=LaunchResult(success=False, error=outcome.error, code=outcome.error_code).model_dump(),
        )

    return JSONResponse(status_code=202, content=LaunchAccepted(job_id=outcome.job_id).model_dump())


@router.get("/jobs/{job_id}", response_model=LaunchJob)
async def get_launch_job(job_id: str, queue: LaunchQueue = Depends(get_launch_queue)):
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found or expired")
    return job
