"""Selector cache routes.

Endpoints:
    GET    /v1/cache/selectors          Cached sites, most recently used first
    DELETE /v1/cache/selectors/{key}    Forget one site
    DELETE /v1/cache/selectors          Forget every site
"""

from fastapi import APIRouter, Depends, HTTPException

from clipaible.executor.pipeline import PipelineOrchestrator
from clipaible.api.routes.deps import get_orchestrator

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("/selectors")
async def list_selectors(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.selector_cache.stats()


@router.delete("/selectors/{key}")
async def delete_selectors(key: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    if not await orchestrator.selector_cache.delete(key):
        raise HTTPException(status_code=404, detail=f"No cached selectors for {key}")
    return {"deleted": key}


@router.delete("/selectors")
async def clear_selectors(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    removed = await orchestrator.selector_cache.clear()
    return {"removed": removed}
