"""
Job Queue — typed background jobs with bounded retries and status polling.

Topology:
  enqueue ──▶ ready ──▶ worker(s) ──▶ handler ──▶ completed
                ▲            │
                │ promote     │ transient failure, attempts left
                │            ▼
             delayed ◀───── backoff
                             │ permanent / exhausted
                             ▼
                           failed

State machine: waiting → active → {completed | waiting(delayed) | failed}.
Every transition is published on the ``jobs`` topic of the event bus.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from channels.retry import RetryPolicy
from core.errors import ConflictError, PermanentError
from core.events import EventBus, Topics
from job_queue.store import JobStore
from models.schemas import Job, JobHandle, JobStatus, JobType, utcnow

logger = structlog.get_logger()

ProgressFn = Callable[[int], Awaitable[None]]
JobHandler = Callable[[Job, ProgressFn], Awaitable[dict[str, Any]]]

DEFAULT_JOB_RETRY = RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=60.0, retry_unclassified=True)


class JobQueue:
    """
    Owns job execution. Constructed explicitly and started by the host:

        queue = JobQueue(InMemoryJobStore(), build_analysis_handlers(engine))
        await queue.start()
        handle = await queue.enqueue(JobType.ANALYZE_SENTIMENT, "m1", {...})
        await queue.stop()
    """

    def __init__(
        self,
        store: JobStore,
        handlers: Optional[dict[JobType, JobHandler]] = None,
        bus: Optional[EventBus] = None,
        retry_policy: RetryPolicy = DEFAULT_JOB_RETRY,
        concurrency: int = 4,
        promote_interval: float = 1.0,
        poll_interval: float = 0.5,
        retention: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self._handlers: dict[JobType, JobHandler] = dict(handlers or {})
        self.bus = bus
        self.retry_policy = retry_policy
        self.concurrency = concurrency
        self.promote_interval = promote_interval
        self.poll_interval = poll_interval
        self.retention = retention
        self._tasks: list[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._running = False

    @classmethod
    def from_config(cls, store: JobStore, handlers: dict[JobType, JobHandler], config: Any,
                    bus: Optional[EventBus] = None) -> "JobQueue":
        return cls(
            store,
            handlers,
            bus=bus,
            retry_policy=RetryPolicy(
                max_attempts=config.max_attempts,
                base_delay=config.backoff_base,
                max_delay=config.backoff_max,
                retry_unclassified=True,
            ),
            concurrency=config.concurrency,
            promote_interval=config.promote_interval,
            poll_interval=config.poll_interval,
            retention=timedelta(hours=config.retention_hours),
        )

    @property
    def running(self) -> bool:
        return self._running

    def register(self, job_type: JobType, handler: JobHandler):
        self._handlers[JobType(job_type)] = handler

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        if self._running:
            return
        await self.store.connect()
        recovered = await self.store.recover_active()
        self._running = True
        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker(i)))
        self._tasks.append(asyncio.create_task(self._promote_loop()))
        logger.info("job_queue_started", concurrency=self.concurrency, recovered=recovered)

    async def stop(self):
        self._running = False
        self._wakeup.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.store.close()
        logger.info("job_queue_stopped")

    # ── Submission & polling ──────────────────────────────────

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        entity_id: str,
        payload: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> JobHandle:
        """Record the job and return immediately; execution happens on a worker."""
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise PermanentError(f"Unknown job type: {job_type}", code="unknown_job_type")
        if job_type not in self._handlers:
            raise PermanentError(f"No handler registered for {job_type.value}", code="unknown_job_type")
        if not entity_id:
            raise PermanentError("entity_id is required", code="validation_error")

        job = Job(
            type=job_type,
            entity_id=entity_id,
            user_id=user_id,
            payload=payload or {},
            max_attempts=self.retry_policy.max_attempts,
        )
        stored, created = await self.store.add(job)
        if not created:
            if stored.user_id and user_id and stored.user_id != user_id:
                logger.warning("job_owned_by_another_user", job_id=stored.id)
                raise ConflictError(f"Job {stored.id} was submitted by another user", code="job_exists")
            logger.info("job_duplicate", job_id=stored.id, status=stored.status.value)
            return JobHandle(job_id=stored.id, status=stored.status, duplicate=True)

        logger.info("job_enqueued", job_id=job.id, type=job_type.value)
        await self._publish("job.queued", job)
        self._wakeup.set()
        return JobHandle(job_id=job.id, status=JobStatus.WAITING)

    async def get_status(self, job_id: str) -> dict[str, Any]:
        job = await self.store.get(job_id)
        if job is None:
            return {"job_id": job_id, "status": "not_found"}
        status: dict[str, Any] = {
            "job_id": job.id,
            "type": job.type.value,
            "status": job.status.value,
            "delayed": job.delayed,
            "progress": job.progress,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "created_at": job.created_at.isoformat(),
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        }
        if job.status == JobStatus.COMPLETED:
            status["result"] = job.result
        if job.error:
            status["error"] = job.error
        return status

    async def stats(self) -> dict[str, Any]:
        counts = await self.store.counts()
        return {**counts, "workers": len([t for t in self._tasks if not t.done()]), "running": self._running}

    async def cleanup(self, retention: Optional[timedelta] = None) -> int:
        cutoff = utcnow() - (retention if retention is not None else self.retention)
        removed = await self.store.purge_finished(cutoff)
        if removed:
            logger.info("jobs_cleaned_up", removed=removed)
        return removed

    # ── Execution ─────────────────────────────────────────────

    async def process_next(self) -> Optional[Job]:
        """Run one ready job to its next state. Returns the job, or None when idle."""
        job = await self.store.claim_next()
        if job is None:
            return None
        await self._execute(job)
        return job

    async def _execute(self, job: Job):
        job.attempts += 1
        job.started_at = utcnow()
        job.progress = 0
        await self.store.update(job)
        await self._publish("job.active", job)
        logger.info("job_started", job_id=job.id, attempt=job.attempts)

        handler = self._handlers.get(job.type)
        try:
            if handler is None:
                raise PermanentError(f"No handler registered for {job.type.value}", code="unknown_job_type")
            result = await handler(job, self._progress_reporter(job))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
            return

        job.status = JobStatus.COMPLETED
        job.result = result or {}
        job.progress = 100
        job.error = None
        job.error_kind = None
        job.finished_at = utcnow()
        await self.store.finish(job)
        await self._publish("job.completed", job, result=job.result)
        logger.info("job_completed", job_id=job.id, attempts=job.attempts)

    async def _handle_failure(self, job: Job, error: Exception):
        decision = self.retry_policy.decide(error, job.attempts)
        job.error = str(error) or type(error).__name__
        job.error_kind = getattr(error, "kind", "unclassified")

        if decision.retry:
            job.run_at = utcnow() + timedelta(seconds=decision.delay)
            await self.store.requeue(job)
            logger.warning("job_retry_scheduled", job_id=job.id, attempt=job.attempts,
                           delay_s=decision.delay, error=job.error)
            await self._publish("job.retry_scheduled", job, delay_s=decision.delay)
            return

        job.status = JobStatus.FAILED
        job.finished_at = utcnow()
        await self.store.finish(job)
        logger.error("job_failed", job_id=job.id, attempts=job.attempts,
                     reason=decision.reason, error=job.error,
                     exc_info=job.error_kind == "unclassified")
        await self._publish("job.failed", job, reason=decision.reason)

    def _progress_reporter(self, job: Job) -> ProgressFn:
        async def report(progress: int):
            job.progress = max(0, min(int(progress), 100))
            await self.store.update(job)
            await self._publish("job.progress", job)
        return report

    async def _publish(self, event_type: str, job: Job, **extra):
        if self.bus is None:
            return
        await self.bus.publish(
            Topics.JOBS,
            event_type,
            data={
                "job_id": job.id,
                "type": job.type.value,
                "entity_id": job.entity_id,
                "status": job.status.value,
                "progress": job.progress,
                "attempts": job.attempts,
                "error": job.error,
                **extra,
            },
            user_id=job.user_id,
        )

    # ── Background loops ──────────────────────────────────────

    async def _worker(self, index: int):
        while self._running:
            try:
                job = await self.process_next()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("job_worker_error", worker=index, error=str(e), exc_info=True)
                job = None
                await asyncio.sleep(self.poll_interval)
            if job is None:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()

    async def _promote_loop(self):
        while self._running:
            try:
                if await self.store.promote_due():
                    self._wakeup.set()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.promote_interval)
