"""ClipAIble API - resumable web-clip pipeline.

Accepts a captured page, runs it through extraction, optional
translation and summary, and document generation in the background, and
exposes the job's progress for polling. Job state is checkpointed so a
restarted process picks up a recent job where it left off.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clipaible import __version__
from clipaible.api.routes import cache, clips, stats
from clipaible.executor.pipeline import PipelineOrchestrator
from clipaible.executor.schemas import RestoreOutcome
from clipaible.executor.storage import get_storage

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _default_orchestrator() -> PipelineOrchestrator:
    storage = get_storage(os.environ.get("CLIPAIBLE_STORAGE"))
    return PipelineOrchestrator(storage)


def create_app(
    orchestrator_factory: Optional[Callable[[], PipelineOrchestrator]] = None,
) -> FastAPI:
    """Build the API. Tests pass a factory wired to in-memory fakes."""
    factory = orchestrator_factory or _default_orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup: build the pipeline and pick up an interrupted job
        logger.info("Initializing clip pipeline...")
        orchestrator = factory()
        app.state.orchestrator = orchestrator
        logger.info(f"Output formats: {', '.join(orchestrator.generators.formats())}")

        outcome = await orchestrator.restore()
        if outcome is RestoreOutcome.RESUMED:
            logger.info(f"Resumed job {orchestrator.get_state().job_id}")
        elif outcome is RestoreOutcome.STALE:
            logger.info("Discarded a stale job snapshot")

        logger.info("ClipAIble API ready")
        yield
        # Shutdown
        logger.info("Shutting down ClipAIble API")
        await orchestrator.shutdown()

    app = FastAPI(
        title="ClipAIble API",
        description="""
## Web clip pipeline

Turns a captured web page into a clean Markdown, HTML or PDF document.

### Key Endpoints

- `POST /v1/clips` - Start a clip job
- `GET /v1/clips/state` - Poll job progress
- `POST /v1/clips/cancel` - Cancel the running job
- `GET /v1/cache/selectors` - Inspect the selector cache
- `GET /v1/stats` - Saved-clip statistics
""",
        version=__version__,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers with /v1 prefix
    app.include_router(clips.router, prefix="/v1")
    app.include_router(cache.router, prefix="/v1")
    app.include_router(stats.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "ClipAIble API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "clips": "/v1/clips",
                "state": "/v1/clips/state",
                "cache": "/v1/cache/selectors",
                "stats": "/v1/stats",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        orchestrator = getattr(app.state, "orchestrator", None)
        state = orchestrator.get_state() if orchestrator else None
        return {
            "status": "healthy" if orchestrator else "starting",
            "version": __version__,
            "job_stage": state.stage.value if state else None,
            "heartbeat": orchestrator.jobs.heartbeat_running if orchestrator else False,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
