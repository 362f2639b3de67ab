"""Job state machine: singleton job, progress, cancellation, restore, heartbeat."""

import asyncio

import pytest

from clipaible.executor.errors import AlreadyRunningError, JobCancelled, ValidationError
from clipaible.executor.job_manager import JobStateMachine
from clipaible.executor.schemas import ClipRequest, JobStage, RestoreOutcome
from clipaible.executor.storage import MemoryStorage
from tests.fakes import FailingStorage, FakeClock, sample_result


def make_request(**overrides) -> ClipRequest:
    fields = {"url": "https://example.com/post", "html": "<p>hi</p>", "api_key": "secret"}
    fields.update(overrides)
    return ClipRequest(**fields)


def machine(storage=None, clock=None, **kwargs) -> JobStateMachine:
    # Long interval keeps the heartbeat quiet unless a test wants it
    kwargs.setdefault("heartbeat_interval", 3600)
    return JobStateMachine(storage or MemoryStorage(), clock=clock or FakeClock(), **kwargs)


def test_start_creates_analyzing_job_and_checkpoints():
    async def scenario():
        storage = MemoryStorage()
        jobs = machine(storage)
        snapshot = await jobs.start(make_request())
        running = jobs.heartbeat_running
        await jobs.shutdown()
        return snapshot, storage, running

    snapshot, storage, running = asyncio.run(scenario())
    assert snapshot.stage is JobStage.ANALYZING
    assert snapshot.progress == 0
    assert snapshot.job_id
    assert running
    assert storage.job_snapshot["job_id"] == snapshot.job_id
    assert "api_key" not in storage.job_snapshot["request"]


def test_second_start_is_rejected_while_active():
    async def scenario():
        jobs = machine()
        first = await jobs.start(make_request())
        with pytest.raises(AlreadyRunningError) as exc_info:
            await jobs.start(make_request(url="https://other.org"))
        state = jobs.get_state()
        await jobs.shutdown()
        return first, exc_info.value, state

    first, error, state = asyncio.run(scenario())
    assert error.job_id == first.job_id
    assert state.job_id == first.job_id
    assert state.request.url == "https://example.com/post"


def test_new_job_allowed_after_terminal_state():
    async def scenario():
        jobs = machine()
        first = await jobs.start(make_request())
        await jobs.complete(sample_result())
        second = await jobs.start(make_request())
        await jobs.shutdown()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.job_id != second.job_id
    assert second.stage is JobStage.ANALYZING


def test_progress_rollback_is_ignored():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        await jobs.advance(JobStage.EXTRACTING, progress=40)
        await jobs.advance(progress=30)
        after_rollback = jobs.get_state().progress
        await jobs.advance(JobStage.GENERATING, progress=0)
        after_zero = jobs.get_state()
        await jobs.shutdown()
        return after_rollback, after_zero

    after_rollback, after_zero = asyncio.run(scenario())
    assert after_rollback == 40
    assert after_zero.progress == 0
    assert after_zero.stage is JobStage.GENERATING
    assert JobStage.EXTRACTING in after_zero.completed_stages


def test_advance_cannot_enter_terminal_stage():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        try:
            with pytest.raises(ValidationError):
                await jobs.advance(JobStage.COMPLETE)
        finally:
            await jobs.shutdown()

    asyncio.run(scenario())


def test_advance_on_idle_machine_is_ignored():
    async def scenario():
        storage = MemoryStorage()
        jobs = machine(storage)
        await jobs.advance(JobStage.EXTRACTING, progress=50)
        return jobs.get_state(), storage

    state, storage = asyncio.run(scenario())
    assert state.stage is JobStage.IDLE
    assert storage.job_snapshot is None


def test_cancel_then_mark_cancelled_has_no_error():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        assert await jobs.cancel()
        assert jobs.cancel_event.is_set()
        with pytest.raises(JobCancelled):
            jobs.check_cancelled("test")
        await jobs.mark_cancelled()
        return jobs.get_state(), jobs.heartbeat_running, await jobs.cancel()

    state, heartbeat, cancel_again = asyncio.run(scenario())
    assert state.stage is JobStage.CANCELLED
    assert state.cancelled
    assert state.error is None
    assert not heartbeat
    assert cancel_again is False


def test_fail_records_normalized_error():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        await jobs.fail({"code": "rate_limit", "message": "slow down"})
        return jobs.get_state()

    state = asyncio.run(scenario())
    assert state.stage is JobStage.ERROR
    assert state.error.code == "rate_limit"


def test_complete_sets_result_and_full_progress():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        await jobs.advance(JobStage.GENERATING, progress=80)
        await jobs.complete(sample_result("Done"), "/tmp/out.md")
        return jobs.get_state()

    state = asyncio.run(scenario())
    assert state.stage is JobStage.COMPLETE
    assert state.progress == 100
    assert state.result.title == "Done"
    assert state.artifact == "/tmp/out.md"


def test_complete_after_cancel_ends_cancelled():
    async def scenario():
        jobs = machine()
        await jobs.start(make_request())
        await jobs.advance(JobStage.GENERATING, progress=80)
        await jobs.cancel()
        await jobs.complete(sample_result("Done"), "/tmp/out.md")
        return jobs.get_state()

    state = asyncio.run(scenario())
    assert state.stage is JobStage.CANCELLED
    assert state.result is None
    assert state.error is None


def _persist_active_job(storage, clock, age):
    async def scenario():
        jobs = machine(storage, clock)
        await jobs.start(make_request())
        await jobs.advance(JobStage.EXTRACTING, progress=30)
        await jobs.shutdown()
    asyncio.run(scenario())
    clock.advance(age)


def test_restore_resumes_recent_job():
    storage, clock = MemoryStorage(), FakeClock()
    _persist_active_job(storage, clock, age=5)

    async def scenario():
        jobs = machine(storage, clock)
        outcome = await jobs.restore()
        state = jobs.get_state()
        running = jobs.heartbeat_running
        await jobs.shutdown()
        return outcome, state, running

    outcome, state, running = asyncio.run(scenario())
    assert outcome is RestoreOutcome.RESUMED
    assert state.stage is JobStage.EXTRACTING
    assert state.progress == 30
    assert state.request.api_key is None
    assert running


def test_restore_discards_stale_job():
    storage, clock = MemoryStorage(), FakeClock()
    _persist_active_job(storage, clock, age=90)

    async def scenario():
        jobs = machine(storage, clock)
        return await jobs.restore(), jobs.get_state()

    outcome, state = asyncio.run(scenario())
    assert outcome is RestoreOutcome.STALE
    assert state.stage is JobStage.IDLE
    assert storage.job_snapshot is None


def test_restore_loads_terminal_job_for_observation():
    storage, clock = MemoryStorage(), FakeClock()

    async def finish():
        jobs = machine(storage, clock)
        await jobs.start(make_request())
        await jobs.complete(sample_result())
    asyncio.run(finish())
    clock.advance(3600)

    async def scenario():
        jobs = machine(storage, clock)
        return await jobs.restore(), jobs.get_state(), jobs.heartbeat_running

    outcome, state, running = asyncio.run(scenario())
    assert outcome is RestoreOutcome.TERMINAL
    assert state.stage is JobStage.COMPLETE
    assert not running


def test_restore_with_nothing_persisted():
    assert asyncio.run(machine().restore()) is RestoreOutcome.NONE


def test_heartbeat_refreshes_checkpoint_while_active():
    async def scenario():
        storage = MemoryStorage()
        clock = FakeClock()
        jobs = JobStateMachine(storage, clock=clock, heartbeat_interval=0.01)
        await jobs.start(make_request())
        writes_after_start = storage.job_writes
        clock.advance(30)
        await asyncio.sleep(0.1)
        writes = storage.job_writes
        last_update = storage.job_snapshot["last_update_time"]
        await jobs.complete(sample_result())
        await asyncio.sleep(0.05)
        return writes_after_start, writes, last_update, clock.now, jobs.heartbeat_running

    before, after, last_update, now, running = asyncio.run(scenario())
    assert after > before
    assert last_update == now
    assert not running


def test_keep_alive_holds_heartbeat_after_completion():
    async def scenario():
        jobs = JobStateMachine(MemoryStorage(), clock=FakeClock(), heartbeat_interval=0.01)
        await jobs.start(make_request())
        jobs.hold_keep_alive("upload")
        await jobs.complete(sample_result())
        await asyncio.sleep(0.05)
        held = jobs.heartbeat_running
        jobs.release_keep_alive("upload")
        await asyncio.sleep(0.05)
        return held, jobs.heartbeat_running

    held, released = asyncio.run(scenario())
    assert held
    assert not released


def test_checkpoint_failures_do_not_fail_the_job():
    async def scenario():
        jobs = machine(FailingStorage())
        await jobs.start(make_request())
        await jobs.advance(JobStage.EXTRACTING, progress=20)
        await jobs.complete(sample_result())
        return jobs.get_state()

    assert asyncio.run(scenario()).stage is JobStage.COMPLETE
