"""Job lifecycle management for the clip pipeline.

Handles:
- The singleton job (at most one non-terminal job at any time)
- Stage/progress updates, each one checkpointed to host storage
- Cancellation (flag + asyncio.Event, checked at stage and call boundaries)
- Restore after a host restart, with a staleness cutoff
- A heartbeat that keeps re-persisting the snapshot while work is running

The host may kill an idle process at any moment. The heartbeat is what
keeps it busy during long AI calls, and the checkpoint it writes is what
restore() reads back if the process dies anyway. A snapshot whose last
update is older than the resume threshold belongs to a job nobody is
waiting for any more and is discarded instead of resumed.

Persistence failures never fail the job: they are logged and swallowed.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional, Union

from clipaible.executor.errors import AlreadyRunningError, JobCancelled, ValidationError
from clipaible.executor.schemas import (
    STAGE_ORDER,
    ClipRequest,
    ClipResult,
    JobError,
    JobSnapshot,
    JobStage,
    RestoreOutcome,
)
from clipaible.executor.settings import (
    HEARTBEAT_INTERVAL_SECONDS,
    RESUME_THRESHOLD_SECONDS,
)

logger = logging.getLogger(__name__)

# Heartbeat gives up after this many failed writes in a row
MAX_CONSECUTIVE_HEARTBEAT_ERRORS = 5

_STAGE_STATUS = {
    JobStage.ANALYZING: "Analyzing page...",
    JobStage.EXTRACTING: "Extracting content...",
    JobStage.TRANSLATING: "Translating...",
    JobStage.GENERATING: "Generating document...",
    JobStage.COMPLETE: "Done!",
    JobStage.CANCELLED: "Cancelled",
    JobStage.ERROR: "Failed",
}


class JobStateMachine:
    """Owns the one job and its checkpoints.

    Args:
        storage: HostStorage the snapshot is written to
        clock: Returns epoch seconds (injectable for tests)
        heartbeat_interval: Seconds between heartbeat writes
        resume_threshold: Max snapshot age (seconds) that restore() resumes
        sleep: Awaitable sleep used by the heartbeat loop
    """

    def __init__(
        self,
        storage,
        clock: Callable[[], float] = time.time,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        resume_threshold: float = RESUME_THRESHOLD_SECONDS,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self._storage = storage
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._resume_threshold = resume_threshold
        self._sleep = sleep

        self._job = JobSnapshot()
        self._cancel_event = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._keep_alive: dict[str, int] = {}

    # --- Observation ---

    def get_state(self) -> JobSnapshot:
        """Deep copy of the current job snapshot."""
        return self._job.model_copy(deep=True)

    @property
    def job_id(self) -> Optional[str]:
        return self._job.job_id

    @property
    def is_cancelled(self) -> bool:
        return self._job.cancelled

    @property
    def cancel_event(self) -> asyncio.Event:
        """Set when cancel() is called; in-flight calls can race against it."""
        return self._cancel_event

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    # --- Transitions ---

    async def start(self, request: ClipRequest) -> JobSnapshot:
        """Create a new job in the Analyzing stage.

        Raises:
            AlreadyRunningError: If a non-terminal job exists
        """
        if self._job.is_active:
            raise AlreadyRunningError(self._job.job_id)

        now = self._clock()
        self._job = JobSnapshot(
            job_id=uuid.uuid4().hex[:12],
            stage=JobStage.ANALYZING,
            status=_STAGE_STATUS[JobStage.ANALYZING],
            progress=0,
            start_time=now,
            last_update_time=now,
            output_format=request.output_format,
            request=request,
        )
        self._cancel_event = asyncio.Event()

        await self._checkpoint()
        self._start_heartbeat()
        logger.info(
            f"[{self._job.job_id}] Started job: {request.url} "
            f"(mode={request.mode.value}, format={request.output_format})"
        )
        return self.get_state()

    async def advance(
        self,
        stage: Optional[JobStage] = None,
        status: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> None:
        """Move the active job forward and checkpoint it.

        Progress is kept monotonic the lenient way: a lower value (other
        than an explicit 0 or 100) is ignored with a warning, while the
        stage and status still update. Updates on a job that is not active
        are ignored.

        Raises:
            ValidationError: If asked to advance into a terminal stage
        """
        if not self._job.is_active:
            logger.warning(f"Ignoring advance({stage}, {status!r}, {progress}) on inactive job")
            return
        if stage is not None and stage not in STAGE_ORDER[:-1]:
            raise ValidationError(f"advance() cannot enter {stage.value}; use complete/fail/mark_cancelled")

        job = self._job
        if stage is not None and stage != job.stage:
            self._mark_stage_passed(job.stage)
            job.stage = stage
            if status is None:
                status = _STAGE_STATUS.get(stage, job.status)

        if status is not None:
            job.status = status

        if progress is not None:
            progress = max(0, min(100, int(progress)))
            if progress < job.progress and progress not in (0, 100):
                logger.warning(
                    f"[{job.job_id}] Progress rollback ignored: {job.progress} -> {progress} "
                    f"(stage={job.stage.value})"
                )
            else:
                job.progress = progress

        job.last_update_time = self._clock()
        await self._checkpoint()
        logger.debug(f"[{job.job_id}] {job.stage.value} {job.progress}%: {job.status}")

    async def cancel(self) -> bool:
        """Request cancellation of the active job.

        Only sets the flag (and the event); the stage moves to Cancelled
        when the running pipeline notices at its next check.

        Returns:
            True if there was an active job to cancel
        """
        if not self._job.is_active:
            return False
        if self._job.cancelled:
            return True

        self._job.cancelled = True
        self._job.status = "Cancelling..."
        self._job.last_update_time = self._clock()
        self._cancel_event.set()
        await self._checkpoint()
        logger.info(f"[{self._job.job_id}] Cancellation requested")
        return True

    def check_cancelled(self, context: str = "") -> None:
        """Raise JobCancelled if cancellation was requested."""
        if self._job.cancelled:
            where = f" ({context})" if context else ""
            raise JobCancelled(f"[{self._job.job_id}] Cancelled{where}")

    async def mark_cancelled(self) -> None:
        """Terminal transition after the pipeline observed a cancellation."""
        if self._job.is_terminal or self._job.stage is JobStage.IDLE:
            return
        self._job.stage = JobStage.CANCELLED
        self._job.status = _STAGE_STATUS[JobStage.CANCELLED]
        self._job.cancelled = True
        self._job.error = None
        await self._finish()
        logger.info(f"[{self._job.job_id}] Job cancelled")

    async def fail(self, error: Union[JobError, dict]) -> None:
        """Terminal transition to Error with a normalized {code, message}."""
        if self._job.is_terminal or self._job.stage is JobStage.IDLE:
            logger.warning(f"Ignoring fail() on job in stage {self._job.stage.value}")
            return
        if isinstance(error, dict):
            error = JobError(**error)
        self._job.stage = JobStage.ERROR
        self._job.status = _STAGE_STATUS[JobStage.ERROR]
        self._job.error = error
        await self._finish()
        logger.error(f"[{self._job.job_id}] Job failed [{error.code}]: {error.message}")

    async def complete(self, result: ClipResult, artifact: Optional[str] = None) -> None:
        """Terminal transition to Complete, or to Cancelled if cancellation was requested."""
        if self._job.is_terminal or self._job.stage is JobStage.IDLE:
            logger.warning(f"Ignoring complete() on job in stage {self._job.stage.value}")
            return
        if self._job.cancelled:
            await self.mark_cancelled()
            return
        self._mark_stage_passed(self._job.stage)
        self._job.stage = JobStage.COMPLETE
        self._job.status = _STAGE_STATUS[JobStage.COMPLETE]
        self._job.progress = 100
        self._job.result = result
        self._job.artifact = artifact
        await self._finish()
        elapsed = self._clock() - (self._job.start_time or self._clock())
        logger.info(f"[{self._job.job_id}] Job complete in {elapsed:.1f}s")

    async def reset(self) -> None:
        """Drop any job (terminal or not) and clear the persisted snapshot."""
        await self._stop_heartbeat(force=True)
        self._job = JobSnapshot()
        self._cancel_event = asyncio.Event()
        try:
            await self._storage.clear_job_snapshot()
        except Exception as e:
            logger.warning(f"Failed to clear job snapshot (non-fatal): {e}")

    async def restore(self) -> RestoreOutcome:
        """Reload the last checkpoint after a restart.

        A non-terminal snapshot updated within the resume threshold is
        adopted and its heartbeat restarted; the caller is expected to
        re-drive the pipeline. Older ones are discarded and the machine
        returns to Idle. Terminal snapshots are loaded for observation only.
        """
        try:
            raw = await self._storage.read_job_snapshot()
        except Exception as e:
            logger.warning(f"Failed to read job snapshot (starting idle): {e}")
            return RestoreOutcome.NONE
        if not raw:
            return RestoreOutcome.NONE

        try:
            snapshot = JobSnapshot(**raw)
        except ValueError as e:
            logger.warning(f"Discarding malformed job snapshot: {e}")
            await self.reset()
            return RestoreOutcome.NONE

        if snapshot.is_terminal:
            self._job = snapshot
            logger.info(f"[{snapshot.job_id}] Restored terminal job ({snapshot.stage.value})")
            return RestoreOutcome.TERMINAL
        if not snapshot.is_active:
            return RestoreOutcome.NONE

        age = self._clock() - (snapshot.last_update_time or 0)
        if age > self._resume_threshold:
            logger.warning(
                f"[{snapshot.job_id}] Snapshot is {age:.0f}s old "
                f"(threshold {self._resume_threshold:.0f}s), discarding"
            )
            await self.reset()
            return RestoreOutcome.STALE

        self._job = snapshot
        self._cancel_event = asyncio.Event()
        if snapshot.cancelled:
            self._cancel_event.set()
        self._start_heartbeat()
        logger.info(
            f"[{snapshot.job_id}] Resuming job from {snapshot.stage.value} "
            f"({snapshot.progress}%, {age:.0f}s old)"
        )
        return RestoreOutcome.RESUMED

    # --- Keep-alive ---

    def hold_keep_alive(self, reason: str) -> None:
        """Keep the heartbeat running for `reason` even once the job is terminal."""
        self._keep_alive[reason] = self._keep_alive.get(reason, 0) + 1
        self._start_heartbeat()

    def release_keep_alive(self, reason: str) -> None:
        count = self._keep_alive.get(reason, 0) - 1
        if count > 0:
            self._keep_alive[reason] = count
        else:
            self._keep_alive.pop(reason, None)

    async def shutdown(self) -> None:
        """Stop the heartbeat (process is exiting)."""
        await self._stop_heartbeat(force=True)

    # --- Internals ---

    def _mark_stage_passed(self, stage: JobStage) -> None:
        if stage in STAGE_ORDER and stage not in self._job.completed_stages:
            self._job.completed_stages.append(stage)

    async def _finish(self) -> None:
        self._job.last_update_time = self._clock()
        await self._checkpoint()
        await self._stop_heartbeat()

    async def _checkpoint(self) -> bool:
        try:
            await self._storage.write_job_snapshot(self._job.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.warning(f"[{self._job.job_id}] Checkpoint write failed (non-fatal): {e}")
            return False

    def _should_keep_beating(self) -> bool:
        return self._job.is_active or bool(self._keep_alive)

    def _start_heartbeat(self) -> None:
        if self.heartbeat_running:
            return
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(), name="clip-heartbeat"
        )

    async def _stop_heartbeat(self, force: bool = False) -> None:
        if not force and self._keep_alive:
            return
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        consecutive_errors = 0
        logger.debug(f"Heartbeat started (every {self._heartbeat_interval}s)")
        while True:
            await self._sleep(self._heartbeat_interval)
            if not self._should_keep_beating():
                logger.debug("Heartbeat stopping: nothing left to keep alive")
                return

            if self._job.is_active:
                self._job.last_update_time = self._clock()
            if await self._checkpoint():
                consecutive_errors = 0
            else:
                consecutive_errors += 1
                if consecutive_errors >= MAX_CONSECUTIVE_HEARTBEAT_ERRORS:
                    logger.error(
                        f"Heartbeat stopped after {consecutive_errors} consecutive write failures"
                    )
                    return
