"""Pipeline orchestrator: drives one clip from request to document.

Stages, in order:
1. Acquire content with the strategy for the request's processing mode
2. Translate (only when a target language is set)
3. Summarize (only when an abstract was requested)
4. Generate the output document
5. Record stats and complete the job

The run happens in a background asyncio task; start() returns as soon as
the job exists. Cancellation is cooperative: JobCancelled raised at any
boundary ends the job in Cancelled, and so does any failure that surfaces
after cancellation was requested. Anything else ends it in Error with a
normalized {code, message}.

Translation, summary and stats are optional steps. A failure there is
logged and the pipeline continues, except for an authentication failure
during translation, which fails the job (the same key would fail every
later call too).
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from clipaible.executor.errors import (
    AlreadyRunningError,
    JobCancelled,
    ValidationError,
    is_auth_error,
    normalize_error,
)
from clipaible.executor.job_manager import JobStateMachine
from clipaible.executor.schemas import (
    ClipRequest,
    ClipResult,
    JobSnapshot,
    JobStage,
    RestoreOutcome,
    StartResult,
)
from clipaible.executor.selector_cache import SelectorCache
from clipaible.executor.settings import PipelineSettings
from clipaible.executor.stats import record_save
from clipaible.executor.strategies import StrategyContext, default_strategies
from clipaible.extraction.page_extractor import HeuristicExtractor, SelectorPageExtractor
from clipaible.extraction.transforms import LLMSummarizer, LLMTranslator, effective_language
from clipaible.generation.registry import GenerationData, default_registry
from clipaible.llm.client import AIClient

logger = logging.getLogger(__name__)

# Progress range the generator's own 0-100 is mapped into
GENERATION_PROGRESS_START = 65
GENERATION_PROGRESS_END = 99

TRANSLATION_PROGRESS = 60

# Formats that never carry an abstract
NO_SUMMARY_FORMATS = ("audio",)

Notifier = Callable[[JobSnapshot], Awaitable[None]]


class PipelineOrchestrator:
    """Runs clip jobs end to end, one at a time.

    Every collaborator can be swapped for tests; the defaults are the
    built-in AI client, BeautifulSoup/readability extractors, LLM
    translator and summarizer, and the Markdown/HTML/PDF generators.

    Args:
        storage: HostStorage for job snapshots, the selector cache and stats
        settings: Runtime knobs (defaults to PipelineSettings.from_env())
        notifier: Optional async callback run when a job completes or fails
        clock: Returns epoch seconds
        sleep: Awaitable sleep used for retry waits
    """

    def __init__(
        self,
        storage,
        *,
        settings: Optional[PipelineSettings] = None,
        ai_client=None,
        selector_cache: Optional[SelectorCache] = None,
        page_extractor=None,
        heuristic_extractor=None,
        translator=None,
        summarizer=None,
        generators=None,
        strategies=None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.settings = settings or PipelineSettings.from_env()
        self.storage = storage
        self.jobs = JobStateMachine(
            storage,
            clock=clock,
            heartbeat_interval=self.settings.heartbeat_interval_seconds,
            resume_threshold=self.settings.resume_threshold_seconds,
        )
        self.ai = ai_client or AIClient(
            self.settings.retry_policy,
            sleep=sleep,
            default_model=self.settings.default_model,
        )
        self.selector_cache = selector_cache or SelectorCache(storage, clock=clock)
        self.page_extractor = page_extractor or SelectorPageExtractor()
        self.heuristic_extractor = heuristic_extractor or HeuristicExtractor()
        self.translator = translator or LLMTranslator(self.ai)
        self.summarizer = summarizer or LLMSummarizer(self.ai)
        self.generators = generators or default_registry()
        self.strategies = strategies or default_strategies()
        self.notifier = notifier
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    # --- Observation / control ---

    def get_state(self) -> JobSnapshot:
        return self.jobs.get_state()

    async def cancel(self) -> bool:
        """Request cancellation of the running job. False if nothing is running."""
        return await self.jobs.cancel()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, request: ClipRequest) -> StartResult:
        """Create a job for the request and run it in the background.

        Returns:
            StartResult; accepted=False (and nothing changed) when another
            job is still running

        Raises:
            ValidationError: If no generator handles the output format or
                the processing mode is unknown
        """
        if not self.generators.supports(request.output_format):
            raise ValidationError(
                f"Unsupported output format: {request.output_format!r} "
                f"(available: {', '.join(self.generators.formats())})"
            )
        if request.mode not in self.strategies:
            raise ValidationError(f"Unsupported processing mode: {request.mode.value}")
        if not request.html.strip():
            raise ValidationError("Page HTML is empty")

        try:
            snapshot = await self.jobs.start(request)
        except AlreadyRunningError as e:
            logger.info(f"Start rejected: {e}")
            return StartResult(accepted=False, job_id=e.job_id, reason=str(e))

        self._launch(request)
        return StartResult(accepted=True, job_id=snapshot.job_id)

    async def restore(self) -> RestoreOutcome:
        """Reload the last checkpoint and re-drive it if it is resumable."""
        outcome = await self.jobs.restore()
        if outcome is RestoreOutcome.RESUMED:
            await self.resume()
        return outcome

    async def resume(self) -> bool:
        """Re-run the pipeline for a restored, still-active job.

        Acquisition results are not checkpointed, so the run starts over
        from acquisition; progress never moves backwards on the way.

        Returns:
            True if a run was launched
        """
        state = self.jobs.get_state()
        if not state.is_active or state.request is None:
            return False
        if self.running:
            logger.warning(f"[{state.job_id}] Resume skipped: pipeline already running")
            return False
        logger.info(f"[{state.job_id}] Re-driving restored job from {state.stage.value}")
        self._launch(state.request)
        return True

    async def wait(self) -> None:
        """Wait for the background run (if any) to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def shutdown(self) -> None:
        """Stop the background run and the heartbeat.

        The job itself is left as checkpointed, so a restart within the
        resume threshold picks it up again.
        """
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.jobs.shutdown()

    # --- The run ---

    def _launch(self, request: ClipRequest) -> None:
        job_id = self.jobs.job_id
        self._task = asyncio.get_running_loop().create_task(
            self._run(request), name=f"clip-{job_id}"
        )

    def _context(self) -> StrategyContext:
        return StrategyContext(
            jobs=self.jobs,
            settings=self.settings,
            ai=self.ai,
            selector_cache=self.selector_cache,
            page_extractor=self.page_extractor,
            heuristic_extractor=self.heuristic_extractor,
            sleep=self._sleep,
        )

    async def _call(self, awaitable: Awaitable, label: str):
        return await self._context().call(awaitable, label)

    async def _run(self, request: ClipRequest) -> None:
        job_id = self.jobs.job_id
        started = self._clock()
        try:
            self.jobs.check_cancelled("before acquisition")
            strategy = self.strategies[request.mode]
            result = await strategy.acquire(request, self._context())
            logger.info(
                f"[{job_id}] Acquired {len(result.content)} blocks "
                f"({request.mode.value} mode), title={result.title[:60]!r}"
            )

            result = await self._translate(request, result)
            result = await self._summarize(request, result)
            artifact = await self._generate(job_id, request, result)

            self.jobs.check_cancelled("before finalize")
            await record_save(
                self.storage,
                title=result.title,
                url=request.url,
                output_format=request.output_format,
                processing_seconds=self._clock() - started,
                clock=self._clock,
            )
            self.jobs.check_cancelled("before complete")
            await self.jobs.complete(result, artifact)
            await self._notify()

        except JobCancelled as e:
            logger.info(f"[{job_id}] {e}")
            await self.jobs.mark_cancelled()

        except Exception as e:
            if self.jobs.is_cancelled:
                logger.info(f"[{job_id}] Cancelled while a step was failing: {e}")
                await self.jobs.mark_cancelled()
                return
            logger.error(f"[{job_id}] Pipeline failed: {e}", exc_info=True)
            await self.jobs.fail(normalize_error(e))
            await self._notify()

    async def _translate(self, request: ClipRequest, result: ClipResult) -> ClipResult:
        target = request.target_language
        if not target or target == "auto":
            return result

        self.jobs.check_cancelled("before translation")
        await self.jobs.advance(JobStage.TRANSLATING, f"Translating into {target}...", TRANSLATION_PROGRESS)

        if request.translate_images:
            try:
                result = await self._call(
                    self.translator.translate_images(result, request, self._is_cancelled),
                    "translate-images",
                )
            except JobCancelled:
                raise
            except Exception as e:
                if is_auth_error(e):
                    raise
                logger.warning(f"Image text translation failed (continuing): {e}")

        try:
            result = await self._call(
                self.translator.translate(result, request, self._is_cancelled),
                "translate",
            )
        except JobCancelled:
            raise
        except Exception as e:
            if is_auth_error(e):
                raise
            logger.warning(f"Translation failed, continuing untranslated: {e}")
        return result

    async def _summarize(self, request: ClipRequest, result: ClipResult) -> ClipResult:
        if not request.generate_abstract or request.output_format in NO_SUMMARY_FORMATS:
            return result

        self.jobs.check_cancelled("before summary")
        await self.jobs.advance(status="Writing abstract...")
        try:
            summary = await self._call(
                self.summarizer.summarize(
                    result, request, effective_language(result, request), self._is_cancelled
                ),
                "summary",
            )
        except JobCancelled:
            raise
        except Exception as e:
            logger.warning(f"Summary failed (continuing without abstract): {e}")
            return result

        if summary:
            result = result.model_copy(update={"summary": summary})
        return result

    async def _generate(self, job_id: str, request: ClipRequest, result: ClipResult) -> str:
        self.jobs.check_cancelled("before generation")
        await self.jobs.advance(JobStage.GENERATING, progress=GENERATION_PROGRESS_START)

        generator = self.generators.get(request.output_format)
        span = GENERATION_PROGRESS_END - GENERATION_PROGRESS_START

        async def progress(percent: int, status: str) -> None:
            self.jobs.check_cancelled("during generation")
            percent = max(0, min(100, int(percent)))
            await self.jobs.advance(
                status=status,
                progress=GENERATION_PROGRESS_START + span * percent // 100,
            )

        data = GenerationData(
            job_id=job_id,
            url=request.url,
            output_format=request.output_format,
            result=result,
            language=effective_language(result, request),
            output_dir=self.settings.output_dir,
        )
        return await self._call(generator.generate(data, progress), f"generate-{request.output_format}")

    def _is_cancelled(self) -> bool:
        return self.jobs.is_cancelled

    async def _notify(self) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(self.jobs.get_state())
        except Exception as e:
            logger.warning(f"Notifier failed (non-fatal): {e}")
