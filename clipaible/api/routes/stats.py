"""Saved-clip statistics routes.

Endpoints:
    GET    /v1/stats    Counters and recent history
    DELETE /v1/stats    Reset every counter
"""

from fastapi import APIRouter, Depends

from clipaible.executor.pipeline import PipelineOrchestrator
from clipaible.executor.schemas import StatsRecord
from clipaible.executor.stats import load_stats, reset_stats
from clipaible.api.routes.deps import get_orchestrator

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("", response_model=StatsRecord)
async def get_stats(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return await load_stats(orchestrator.storage)


@router.delete("")
async def clear_stats(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    await reset_stats(orchestrator.storage)
    return {"reset": True}
