"""Content-acquisition strategies: one per processing mode.

Each strategy turns a ClipRequest into a ClipResult, reporting progress
through the job state machine and checking cancellation before every
external call:

- SelectorModeStrategy: AI infers CSS selectors (or the selector cache
  supplies them), a local extractor walks the DOM
- ExtractModeStrategy: the page is split into overlapping chunks, the AI
  extracts each chunk, results are reconciled and deduplicated
- HeuristicModeStrategy: no AI at all, readability picks the content

Progress bands: Analyzing 5-15, Extracting 20-50.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from clipaible.executor.chunking import reconcile, split_into_chunks, trim_html_for_analysis
from clipaible.executor.errors import (
    AuthenticationError,
    ExtractionFailure,
    JobCancelled,
    StepTimeout,
    ValidationError,
)
from clipaible.executor.retry import call_with_retry
from clipaible.executor.schemas import (
    ClipRequest,
    ClipResult,
    JobStage,
    ProcessingMode,
    SelectorSet,
    parse_content_items,
)
from clipaible.executor.settings import PipelineSettings
from clipaible.extraction.prompts import (
    SELECTOR_SYSTEM_PROMPT,
    build_chunk_system_prompt,
    build_chunk_user_prompt,
    build_selector_user_prompt,
)

logger = logging.getLogger(__name__)


async def bounded(awaitable: Awaitable, timeout: float, label: str) -> Any:
    """Await an external call with an upper time limit.

    Raises:
        StepTimeout: If the call does not finish within `timeout` seconds
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise StepTimeout(f"[{label}] No response after {timeout:.0f}s")


@dataclass
class StrategyContext:
    """Collaborators a strategy may use, handed over by the orchestrator."""

    jobs: Any
    settings: PipelineSettings
    ai: Any = None
    selector_cache: Any = None
    page_extractor: Any = None
    heuristic_extractor: Any = None
    sleep: Callable[[float], Awaitable] = asyncio.sleep

    def cancellation_check(self) -> bool:
        return self.jobs.is_cancelled

    async def call(self, awaitable: Awaitable, label: str) -> Any:
        """Run one external call: bounded by the call timeout, cancellation checked after."""
        result = await bounded(awaitable, self.settings.external_call_timeout_seconds, label)
        self.jobs.check_cancelled(f"after {label}")
        return result


class ContentStrategy(Protocol):
    """Produces the article for one processing mode."""

    async def acquire(self, request: ClipRequest, ctx: StrategyContext) -> ClipResult: ...


def _result_from_response(data: Any) -> ClipResult:
    """Build a ClipResult from an extraction response dict."""
    if not isinstance(data, dict):
        raise ExtractionFailure(f"Extraction response is not an object ({type(data).__name__})")
    return ClipResult(
        title=str(data.get("title") or ""),
        author=str(data.get("author") or ""),
        publish_date=str(data.get("publishDate") or data.get("publish_date") or ""),
        content=parse_content_items(data.get("content") or []),
        language=str(data.get("detectedLanguage") or data.get("language") or ""),
    )


# ============================================================
# Selector mode
# ============================================================


class SelectorModeStrategy:
    """AI selectors (or cached ones) plus local DOM extraction.

    A cached entry that fails to extract, or extracts nothing, is
    invalidated and the strategy falls through to fresh inference. A
    failure with freshly inferred selectors propagates. Fresh selectors
    that worked are cached, cached ones that worked get their success
    count bumped.
    """

    async def acquire(self, request: ClipRequest, ctx: StrategyContext) -> ClipResult:
        jobs = ctx.jobs
        cache = ctx.selector_cache
        key = request.url

        jobs.check_cancelled("before selector lookup")
        await jobs.advance(JobStage.ANALYZING, "Checking selector cache...", 5)

        result: Optional[ClipResult] = None
        if cache is not None and request.use_selector_cache:
            entry = await cache.get(key)
            if entry is not None and entry.selectors.has_content_selectors:
                jobs.check_cancelled("before cached extraction")
                await jobs.advance(status="Extracting with cached selectors...", progress=10)
                try:
                    result = await self._extract(entry.selectors, request, ctx)
                except JobCancelled:
                    raise
                except Exception as e:
                    logger.warning(
                        f"Cached selectors failed for {request.url}, invalidating "
                        f"and re-analyzing: {e}"
                    )
                    await cache.invalidate(key)

        from_cache = result is not None
        if from_cache:
            await jobs.advance(JobStage.EXTRACTING, "Extracting content...", 20)
        else:
            selectors = await self._infer_selectors(request, ctx)
            jobs.check_cancelled("before extraction")
            await jobs.advance(JobStage.EXTRACTING, "Extracting content...", 20)
            result = await self._extract(selectors, request, ctx)

        if cache is not None and request.enable_selector_caching:
            try:
                if from_cache:
                    await cache.mark_success(key)
                else:
                    await cache.put(key, selectors)
            except Exception as e:
                logger.warning(f"Selector cache update failed (non-fatal): {e}")

        if not result.title:
            result.title = request.title
        await jobs.advance(progress=50, status=f"Extracted {len(result.content)} blocks")
        return result

    async def _extract(self, selectors: SelectorSet, request: ClipRequest, ctx: StrategyContext) -> ClipResult:
        result = await ctx.call(
            ctx.page_extractor.extract(selectors, request.html, request.url),
            "extract-selectors",
        )
        if not result.content:
            raise ExtractionFailure("Selectors produced no content")
        return result

    async def _infer_selectors(self, request: ClipRequest, ctx: StrategyContext) -> SelectorSet:
        jobs = ctx.jobs
        jobs.check_cancelled("before selector inference")
        await jobs.advance(status="Analyzing page structure...", progress=10)

        html = trim_html_for_analysis(request.html, ctx.settings.max_html_for_analysis)
        response = await ctx.call(
            ctx.ai.call(
                SELECTOR_SYSTEM_PROMPT,
                build_selector_user_prompt(html, request.url, request.title),
                model=request.model,
                api_key=request.api_key,
                structured=True,
                label="selectors",
                cancellation_check=ctx.cancellation_check,
            ),
            "selectors",
        )
        if not isinstance(response, dict):
            raise ExtractionFailure("Selector response is not an object")

        selectors = SelectorSet(**response)
        if not selectors.has_content_selectors:
            raise ExtractionFailure("AI returned no container or content selector")

        logger.info(
            f"Selectors for {request.url}: container={selectors.container!r}, "
            f"content={selectors.content_selector!r}, exclude={len(selectors.exclude)}"
        )
        await jobs.advance(progress=15)
        return selectors


# ============================================================
# Extract mode (chunked, full AI)
# ============================================================


def _chunk_retryable(error: BaseException) -> bool:
    """Chunk-level retry covers bad JSON and empty answers too."""
    return not isinstance(error, (JobCancelled, AuthenticationError, ValidationError))


class ExtractModeStrategy:
    """Full-AI extraction over overlapping chunks, processed in order."""

    async def acquire(self, request: ClipRequest, ctx: StrategyContext) -> ClipResult:
        jobs = ctx.jobs
        settings = ctx.settings

        jobs.check_cancelled("before chunking")
        await jobs.advance(JobStage.ANALYZING, "Preparing page...", 5)
        chunks = split_into_chunks(request.html, settings.chunk_size, settings.chunk_overlap)
        total = len(chunks)
        if total == 0:
            raise ExtractionFailure("Page HTML is empty")
        logger.info(f"Extracting {request.url} in {total} chunk(s)")

        await jobs.advance(JobStage.EXTRACTING, "Extracting content...", 20)

        results: list[ClipResult] = []
        for chunk in chunks:
            jobs.check_cancelled(f"before chunk {chunk.index + 1}/{total}")
            label = f"chunk {chunk.index + 1}/{total}"

            async def attempt(chunk=chunk, label=label):
                data = await ctx.call(
                    ctx.ai.call(
                        build_chunk_system_prompt(chunk.index, total),
                        build_chunk_user_prompt(chunk.text, request.url, request.title, chunk.index, total),
                        model=request.model,
                        api_key=request.api_key,
                        structured=True,
                        label=label,
                        cancellation_check=ctx.cancellation_check,
                    ),
                    label,
                )
                return _result_from_response(data)

            result = await call_with_retry(
                attempt,
                settings.chunk_retry_policy,
                label=label,
                cancellation_check=ctx.cancellation_check,
                retryable=_chunk_retryable,
                sleep=ctx.sleep,
            )
            results.append(result)
            await jobs.advance(
                status=f"Extracted chunk {chunk.index + 1} of {total}",
                progress=20 + int(30 * (chunk.index + 1) / total),
            )

        merged = reconcile(results)
        if not merged.content:
            raise ExtractionFailure("AI extraction returned no content")
        if not merged.title:
            merged.title = request.title
        return merged


# ============================================================
# No-AI mode
# ============================================================


class HeuristicModeStrategy:
    """Readability-based extraction, no AI provider involved."""

    async def acquire(self, request: ClipRequest, ctx: StrategyContext) -> ClipResult:
        jobs = ctx.jobs
        jobs.check_cancelled("before heuristic extraction")
        await jobs.advance(JobStage.ANALYZING, "Analyzing page...", 5)
        await jobs.advance(JobStage.EXTRACTING, "Extracting content...", 20)

        result = await ctx.call(
            ctx.heuristic_extractor.extract(request.html, request.url),
            "extract-heuristic",
        )
        if not result.content:
            raise ExtractionFailure("No article content found on the page")
        if not result.title:
            result.title = request.title
        await jobs.advance(progress=50, status=f"Extracted {len(result.content)} blocks")
        return result


def default_strategies() -> dict[ProcessingMode, ContentStrategy]:
    return {
        ProcessingMode.SELECTOR: SelectorModeStrategy(),
        ProcessingMode.EXTRACT: ExtractModeStrategy(),
        ProcessingMode.AUTOMATIC: HeuristicModeStrategy(),
    }
