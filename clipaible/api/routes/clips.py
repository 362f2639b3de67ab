"""Clip job routes.

Endpoints:
    POST /v1/clips          Start a clip job (409 while another one runs)
    GET  /v1/clips/state    Poll the current job's stage and progress
    POST /v1/clips/cancel   Request cancellation of the running job
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from clipaible.executor.errors import ValidationError
from clipaible.executor.pipeline import PipelineOrchestrator
from clipaible.executor.schemas import ClipRequest, StartResult
from clipaible.api.routes.deps import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clips", tags=["clips"])


@router.post("", status_code=202, response_model=StartResult)
async def start_clip(
    request: ClipRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Start clipping a page.

    The job runs in the background; poll /v1/clips/state for progress.
    """
    try:
        result = await orchestrator.start(request)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if not result.accepted:
        raise HTTPException(
            status_code=409,
            detail={"message": result.reason, "job_id": result.job_id},
        )
    logger.info(f"Accepted clip job {result.job_id} for {request.url}")
    return result


@router.get("/state")
async def get_clip_state(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Current job snapshot. The captured page HTML is left out."""
    state = orchestrator.get_state()
    return state.model_dump(mode="json", exclude={"request": {"html"}})


@router.post("/cancel")
async def cancel_clip(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Request cancellation. The job moves to cancelled at its next checkpoint."""
    cancelled = await orchestrator.cancel()
    return {"cancel_requested": cancelled, "job_id": orchestrator.get_state().job_id}
