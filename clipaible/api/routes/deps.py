"""Request-scoped access to the objects the app lifespan builds."""

from fastapi import HTTPException, Request

from clipaible.executor.pipeline import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline is not initialized")
    return orchestrator
