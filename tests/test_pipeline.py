"""Orchestrator runs end to end against fakes."""

import asyncio

import pytest

from clipaible.executor.errors import AuthenticationError, TransientError, ValidationError
from clipaible.executor.job_manager import JobStateMachine
from clipaible.executor.pipeline import PipelineOrchestrator
from clipaible.executor.schemas import (
    ClipRequest,
    JobStage,
    ProcessingMode,
    RestoreOutcome,
    SelectorSet,
)
from clipaible.executor.selector_cache import SelectorCache
from clipaible.executor.settings import PipelineSettings
from clipaible.executor.storage import MemoryStorage
from clipaible.generation.registry import GeneratorRegistry
from tests.fakes import (
    FakeAI,
    FakeClock,
    FakeGenerator,
    FakeHeuristicExtractor,
    FakePageExtractor,
    FakeSummarizer,
    FakeTranslator,
    RecordingSleep,
    sample_result,
)

SELECTOR_RESPONSE = {"articleContainer": "article", "content": ".body", "exclude": [".ads"]}


def paragraphs(count: int) -> str:
    return "".join(f"<p>{str(i).zfill(3)}{'x' * 90}</p>" for i in range(count))


def request(**overrides) -> ClipRequest:
    fields = {"url": "https://www.example.com/post", "html": "<article><p>Hello</p></article>", "title": "Tab"}
    fields.update(overrides)
    return ClipRequest(**fields)


def build(storage=None, *, ai=None, extractor=None, generator=None, clock=None, **kwargs):
    generators = GeneratorRegistry()
    generators.register("markdown", generator or FakeGenerator())
    settings = kwargs.pop("settings", None) or PipelineSettings(
        chunk_size=1000,
        chunk_overlap=100,
        heartbeat_interval_seconds=3600,
    )
    return PipelineOrchestrator(
        storage or MemoryStorage(),
        settings=settings,
        ai_client=ai or FakeAI([dict(SELECTOR_RESPONSE)]),
        page_extractor=extractor or FakePageExtractor(sample_result()),
        generators=generators,
        clock=clock or FakeClock(),
        sleep=RecordingSleep(),
        **kwargs,
    )


async def run_to_end(orchestrator, clip_request):
    started = await orchestrator.start(clip_request)
    await orchestrator.wait()
    await orchestrator.shutdown()
    return started, orchestrator.get_state()


def test_selector_mode_happy_path_caches_and_records_stats():
    storage = MemoryStorage()
    orchestrator = build(storage)

    started, state = asyncio.run(run_to_end(orchestrator, request()))

    assert started.accepted
    assert state.stage is JobStage.COMPLETE
    assert state.progress == 100
    assert state.error is None
    assert state.artifact.endswith(".markdown")
    assert state.result.title == "A Title"
    assert storage.cache_index == ["example.com"]
    assert storage.stats["total_saved"] == 1
    assert storage.stats["by_format"] == {"markdown": 1}


def test_second_clip_of_site_uses_cached_selectors():
    storage = MemoryStorage()
    asyncio.run(run_to_end(build(storage), request()))

    ai = FakeAI([])
    extractor = FakePageExtractor(sample_result())
    _, state = asyncio.run(run_to_end(build(storage, ai=ai, extractor=extractor), request(url="https://example.com/other")))

    assert state.stage is JobStage.COMPLETE
    assert ai.calls == []
    assert extractor.calls[0].content_selector == ".body"
    assert storage.cache_entries["example.com"]["success_count"] == 1


class StaleSelectorExtractor:
    """Fails for one container, works for everything else."""

    def __init__(self, stale_container: str):
        self.stale_container = stale_container
        self.calls = []

    async def extract(self, selectors, html, base_url):
        self.calls.append(selectors)
        if selectors.container == self.stale_container:
            raise RuntimeError("stale selectors")
        return sample_result()


def test_failing_cached_selectors_fall_back_to_inference():
    storage = MemoryStorage()

    async def seed():
        await SelectorCache(storage).put("example.com", SelectorSet(container="div.gone"))
    asyncio.run(seed())

    ai = FakeAI([dict(SELECTOR_RESPONSE)])
    extractor = StaleSelectorExtractor("div.gone")
    _, state = asyncio.run(run_to_end(build(storage, ai=ai, extractor=extractor), request()))

    assert state.stage is JobStage.COMPLETE
    assert state.error is None
    assert len(ai.calls) == 1
    assert [s.container for s in extractor.calls] == ["div.gone", "article"]
    entry = storage.cache_entries["example.com"]
    assert entry["selectors"]["container"] == "article"
    assert entry["success_count"] == 0


def test_empty_extraction_with_fresh_selectors_fails():
    storage = MemoryStorage()
    extractor = FakePageExtractor(sample_result().model_copy(update={"content": []}))
    _, state = asyncio.run(run_to_end(build(storage, extractor=extractor), request()))

    assert state.stage is JobStage.ERROR
    assert state.error.code == "extraction_failed"
    assert "example.com" not in storage.cache_entries


def test_selector_response_without_content_selectors_fails():
    ai = FakeAI([{"title": "h1"}])
    _, state = asyncio.run(run_to_end(build(ai=ai), request(use_selector_cache=False)))
    assert state.stage is JobStage.ERROR
    assert state.error.code == "extraction_failed"


def test_extract_mode_reconciles_chunks_and_retries_a_bad_chunk():
    ai = FakeAI([
        {"title": "Real Title", "publishDate": "2024-01-01", "content": [{"type": "paragraph", "text": "one"}]},
        ValueError("model returned garbage"),
        {"content": [{"type": "paragraph", "text": "one"}, {"type": "paragraph", "text": "two"}]},
        {"title": "Wrong", "content": [{"type": "paragraph", "text": "three"}]},
    ])
    orchestrator = build(ai=ai)

    _, state = asyncio.run(run_to_end(
        orchestrator,
        request(html=paragraphs(25), mode=ProcessingMode.EXTRACT),
    ))

    assert state.stage is JobStage.COMPLETE
    assert state.result.title == "Real Title"
    assert state.result.publish_date == "2024-01-01"
    assert [i.html for i in state.result.content] == ["one", "two", "three"]
    assert len(ai.calls) == 4
    assert "chunk 2 of 3" in ai.calls[1]["system"]


def test_extract_mode_with_no_content_fails():
    ai = FakeAI([{"title": "t", "content": []}])
    _, state = asyncio.run(run_to_end(build(ai=ai), request(mode=ProcessingMode.EXTRACT)))
    assert state.stage is JobStage.ERROR
    assert state.error.code == "extraction_failed"


def test_heuristic_mode_needs_no_ai():
    ai = FakeAI([])
    orchestrator = build(ai=ai, heuristic_extractor=FakeHeuristicExtractor(sample_result("Readable")))
    _, state = asyncio.run(run_to_end(orchestrator, request(mode=ProcessingMode.AUTOMATIC)))
    assert state.stage is JobStage.COMPLETE
    assert state.result.title == "Readable"
    assert ai.calls == []


def test_translation_applied_when_target_language_set():
    translator = FakeTranslator()
    _, state = asyncio.run(run_to_end(build(translator=translator), request(target_language="de")))
    assert state.stage is JobStage.COMPLETE
    assert state.result.title == "[de] A Title"
    assert state.result.translated
    assert JobStage.TRANSLATING in state.completed_stages


def test_translation_skipped_for_auto():
    translator = FakeTranslator()
    _, state = asyncio.run(run_to_end(build(translator=translator), request()))
    assert translator.calls == 0
    assert JobStage.TRANSLATING not in state.completed_stages


def test_translation_auth_failure_fails_the_job():
    translator = FakeTranslator(error=AuthenticationError("invalid key", status_code=401))
    _, state = asyncio.run(run_to_end(build(translator=translator), request(target_language="fr")))
    assert state.stage is JobStage.ERROR
    assert state.error.code == "auth_error"


def test_other_translation_failures_continue_untranslated():
    translator = FakeTranslator(error=TransientError("overloaded", status_code=503))
    _, state = asyncio.run(run_to_end(build(translator=translator), request(target_language="fr")))
    assert state.stage is JobStage.COMPLETE
    assert state.result.title == "A Title"
    assert not state.result.translated


def test_summary_is_best_effort():
    ok = build(summarizer=FakeSummarizer("Abstract."))
    _, state = asyncio.run(run_to_end(ok, request(generate_abstract=True)))
    assert state.result.summary == "Abstract."

    failing = build(summarizer=FakeSummarizer(error=RuntimeError("boom")))
    _, state = asyncio.run(run_to_end(failing, request(generate_abstract=True)))
    assert state.stage is JobStage.COMPLETE
    assert state.result.summary == ""


def test_generator_progress_maps_into_tail_of_bar():
    seen = []

    async def scenario():
        orchestrator = build()
        original_advance = orchestrator.jobs.advance

        async def spy(stage=None, status=None, progress=None):
            if progress is not None:
                seen.append(progress)
            await original_advance(stage, status, progress)

        orchestrator.jobs.advance = spy
        return await run_to_end(orchestrator, request())

    asyncio.run(scenario())
    assert 65 in seen
    assert 82 in seen
    assert 99 in seen
    assert seen == sorted(seen)


def test_cancel_during_generation_ends_cancelled_without_error():
    storage = MemoryStorage()
    holder = {}

    async def cancel_now():
        await holder["orchestrator"].cancel()

    orchestrator = build(storage, generator=FakeGenerator(hook=cancel_now))
    holder["orchestrator"] = orchestrator

    _, state = asyncio.run(run_to_end(orchestrator, request()))

    assert state.stage is JobStage.CANCELLED
    assert state.error is None
    assert storage.stats is None


def test_generator_failure_is_normalized():
    orchestrator = build(generator=FakeGenerator(error=OSError("disk full")))
    _, state = asyncio.run(run_to_end(orchestrator, request()))
    assert state.stage is JobStage.ERROR
    assert state.error.code == "unknown_error"
    assert "disk full" in state.error.message


def test_start_while_running_is_rejected_without_side_effects():
    async def scenario():
        gate = asyncio.Event()
        orchestrator = build(generator=FakeGenerator(hook=gate.wait))
        first = await orchestrator.start(request())
        while orchestrator.get_state().stage is not JobStage.GENERATING:
            await asyncio.sleep(0)
        second = await orchestrator.start(request(url="https://other.org/x"))
        state = orchestrator.get_state()
        gate.set()
        await orchestrator.wait()
        await orchestrator.shutdown()
        return first, second, state

    first, second, state = asyncio.run(scenario())
    assert first.accepted
    assert not second.accepted
    assert second.job_id == first.job_id
    assert state.job_id == first.job_id
    assert state.request.url == "https://www.example.com/post"


def test_unsupported_format_is_a_validation_error():
    async def scenario():
        with pytest.raises(ValidationError):
            await build().start(request(output_format="epub"))

    asyncio.run(scenario())


def test_slow_step_times_out():
    class SlowExtractor:
        async def extract(self, html, base_url):
            await asyncio.sleep(5)

    settings = PipelineSettings(heartbeat_interval_seconds=3600, external_call_timeout_seconds=0.05)
    orchestrator = build(settings=settings, heuristic_extractor=SlowExtractor())
    _, state = asyncio.run(run_to_end(orchestrator, request(mode=ProcessingMode.AUTOMATIC)))
    assert state.stage is JobStage.ERROR
    assert state.error.code == "timeout"


def test_restored_job_is_re_driven_to_completion():
    storage, clock = MemoryStorage(), FakeClock()

    async def interrupted():
        jobs = JobStateMachine(storage, clock=clock, heartbeat_interval=3600)
        await jobs.start(request())
        await jobs.advance(JobStage.EXTRACTING, progress=30)
        await jobs.shutdown()
    asyncio.run(interrupted())
    clock.advance(5)

    async def restart():
        orchestrator = build(storage, clock=clock)
        outcome = await orchestrator.restore()
        await orchestrator.wait()
        await orchestrator.shutdown()
        return outcome, orchestrator.get_state()

    outcome, state = asyncio.run(restart())
    assert outcome is RestoreOutcome.RESUMED
    assert state.stage is JobStage.COMPLETE
    assert state.result.title == "A Title"


def test_notifier_called_on_completion():
    notified = []

    async def notifier(snapshot):
        notified.append(snapshot.stage)

    asyncio.run(run_to_end(build(notifier=notifier), request()))
    assert notified == [JobStage.COMPLETE]


def test_failure_after_cancel_ends_cancelled():
    holder = {}

    class CancelThenFail:
        async def extract(self, selectors, html, base_url):
            await holder["orchestrator"].cancel()
            raise RuntimeError("upstream blew up after cancel")

    orchestrator = build(extractor=CancelThenFail())
    holder["orchestrator"] = orchestrator
    _, state = asyncio.run(run_to_end(orchestrator, request(use_selector_cache=False)))

    assert state.stage is JobStage.CANCELLED
    assert state.error is None


def test_cancel_while_recording_stats_ends_cancelled():
    holder = {}

    class CancellingStatsStorage(MemoryStorage):
        async def write_stats(self, stats: dict) -> None:
            await holder["orchestrator"].cancel()
            await super().write_stats(stats)

    orchestrator = build(CancellingStatsStorage())
    holder["orchestrator"] = orchestrator
    _, state = asyncio.run(run_to_end(orchestrator, request()))

    assert state.stage is JobStage.CANCELLED
    assert state.result is None
    assert state.error is None
