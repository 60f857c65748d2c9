"""
Job Store — Durable state behind the JobQueue, with Redis and in-memory backends.

Key layout (Redis, ``prefix`` defaults to ``ai-analysis``):
  {prefix}:job:{id}     — JSON-serialized Job; created with SET NX (dedup)
  {prefix}:ready        — list of job ids ready to run (FIFO)
  {prefix}:delayed      — sorted set of job ids backing off, scored by run_at
  {prefix}:active       — set of job ids currently claimed by a worker
  {prefix}:completed    — sorted set of finished ids, scored by finished_at
  {prefix}:failed       — sorted set of finished ids, scored by finished_at

A job id is its dedup key (``type:entity_id``), so re-submitting the same
work while the record exists produces no second execution.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Optional

from models.schemas import Job, JobStatus, utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobStore(ABC):
    """Abstract job store interface."""

    async def connect(self):
        """Establish connection to the backend."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def add(self, job: Job) -> tuple[Job, bool]:
        """Insert unless the key exists. Returns (stored job, created)."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def update(self, job: Job) -> None:
        """Persist job fields without moving it between queues."""
        ...

    @abstractmethod
    async def claim_next(self) -> Optional[Job]:
        """Atomically take the oldest ready job and mark it active."""
        ...

    @abstractmethod
    async def requeue(self, job: Job) -> None:
        """Return a job to waiting: ready now, or delayed until job.run_at."""
        ...

    @abstractmethod
    async def finish(self, job: Job) -> None:
        """Record a terminal job (completed or failed)."""
        ...

    @abstractmethod
    async def promote_due(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose run_at has arrived to ready."""
        ...

    @abstractmethod
    async def recover_active(self) -> int:
        """Requeue jobs left active by a process that stopped mid-run."""
        ...

    @abstractmethod
    async def counts(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def purge_finished(self, before: datetime) -> int:
        """Delete terminal jobs that finished before the cutoff."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobStore(JobStore):
    """Single-process store backed by dicts; no persistence across restarts."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._ready: deque[str] = deque()
        self._delayed: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def add(self, job: Job) -> tuple[Job, bool]:
        async with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._jobs[job.id] = job.model_copy(deep=True)
            self._ready.append(job.id)
            return job, True

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update(self, job: Job) -> None:
        async with self._lock:
            job.updated_at = utcnow()
            self._jobs[job.id] = job.model_copy(deep=True)

    async def claim_next(self) -> Optional[Job]:
        async with self._lock:
            while self._ready:
                job_id = self._ready.popleft()
                job = self._jobs.get(job_id)
                if job is None or job.status != JobStatus.WAITING:
                    continue
                job.status = JobStatus.ACTIVE
                job.delayed = False
                job.updated_at = utcnow()
                return job.model_copy(deep=True)
            return None

    async def requeue(self, job: Job) -> None:
        async with self._lock:
            job.status = JobStatus.WAITING
            job.updated_at = utcnow()
            if job.run_at > utcnow():
                job.delayed = True
                self._delayed[job.id] = job.run_at
            else:
                job.delayed = False
                self._ready.append(job.id)
            self._jobs[job.id] = job.model_copy(deep=True)

    async def finish(self, job: Job) -> None:
        async with self._lock:
            job.updated_at = utcnow()
            job.finished_at = job.finished_at or utcnow()
            self._delayed.pop(job.id, None)
            self._jobs[job.id] = job.model_copy(deep=True)

    async def promote_due(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        async with self._lock:
            due = [job_id for job_id, run_at in self._delayed.items() if run_at <= now]
            for job_id in sorted(due, key=lambda j: self._delayed[j]):
                del self._delayed[job_id]
                job = self._jobs.get(job_id)
                if job is None:
                    continue
                job.delayed = False
                self._ready.append(job_id)
        if due:
            logger.info("delayed_jobs_promoted", count=len(due))
        return len(due)

    async def recover_active(self) -> int:
        async with self._lock:
            stale = [j for j in self._jobs.values() if j.status == JobStatus.ACTIVE]
            for job in stale:
                job.status = JobStatus.WAITING
                job.delayed = False
                self._ready.append(job.id)
        return len(stale)

    async def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        counts["delayed"] = len(self._delayed)
        return counts

    async def purge_finished(self, before: datetime) -> int:
        async with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.finished_at and job.finished_at < before
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return len(expired)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisJobStore(JobStore):
    """
    Production store shared by every worker process.

    - SET NX on the job key gives cross-process deduplication
    - LPOP on the ready list gives each job to exactly one worker
    - ZREM on the delayed set gates promotion to a single promoter
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "ai-analysis", redis=None):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = redis

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True, max_connections=20)
        await self._redis.ping()
        logger.info("redis_job_store_connected", url=self._redis_url, prefix=self._prefix)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._key("job", job_id))
        return Job.model_validate_json(raw) if raw else None

    async def add(self, job: Job) -> tuple[Job, bool]:
        created = await self._redis.set(self._key("job", job.id), job.model_dump_json(), nx=True)
        if not created:
            existing = await self._load(job.id)
            return (existing or job), False
        await self._redis.rpush(self._key("ready"), job.id)
        return job, True

    async def get(self, job_id: str) -> Optional[Job]:
        return await self._load(job_id)

    async def update(self, job: Job) -> None:
        job.updated_at = utcnow()
        await self._redis.set(self._key("job", job.id), job.model_dump_json())

    async def claim_next(self) -> Optional[Job]:
        while True:
            job_id = await self._redis.lpop(self._key("ready"))
            if job_id is None:
                return None
            job = await self._load(job_id)
            if job is None or job.status != JobStatus.WAITING:
                continue
            job.status = JobStatus.ACTIVE
            job.delayed = False
            job.updated_at = utcnow()
            pipe = self._redis.pipeline()
            pipe.set(self._key("job", job.id), job.model_dump_json())
            pipe.sadd(self._key("active"), job.id)
            await pipe.execute()
            return job

    async def requeue(self, job: Job) -> None:
        job.status = JobStatus.WAITING
        job.updated_at = utcnow()
        job.delayed = job.run_at > utcnow()
        pipe = self._redis.pipeline()
        pipe.set(self._key("job", job.id), job.model_dump_json())
        pipe.srem(self._key("active"), job.id)
        if job.delayed:
            pipe.zadd(self._key("delayed"), {job.id: job.run_at.timestamp()})
        else:
            pipe.rpush(self._key("ready"), job.id)
        await pipe.execute()

    async def finish(self, job: Job) -> None:
        job.updated_at = utcnow()
        job.finished_at = job.finished_at or utcnow()
        pipe = self._redis.pipeline()
        pipe.set(self._key("job", job.id), job.model_dump_json())
        pipe.srem(self._key("active"), job.id)
        pipe.zrem(self._key("delayed"), job.id)
        pipe.zadd(self._key(job.status.value), {job.id: job.finished_at.timestamp()})
        await pipe.execute()

    async def promote_due(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        ready = await self._redis.zrangebyscore(self._key("delayed"), "-inf", now.timestamp())
        promoted = 0
        for job_id in ready:
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue  # another promoter took it
            job = await self._load(job_id)
            if job is None:
                continue
            job.delayed = False
            pipe = self._redis.pipeline()
            pipe.set(self._key("job", job_id), job.model_dump_json())
            pipe.rpush(self._key("ready"), job_id)
            await pipe.execute()
            promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted

    async def recover_active(self) -> int:
        stale = await self._redis.smembers(self._key("active"))
        for job_id in stale:
            job = await self._load(job_id)
            await self._redis.srem(self._key("active"), job_id)
            if job is None:
                continue
            job.status = JobStatus.WAITING
            job.delayed = False
            await self.update(job)
            await self._redis.rpush(self._key("ready"), job_id)
        return len(stale)

    async def counts(self) -> dict[str, int]:
        pipe = self._redis.pipeline()
        pipe.llen(self._key("ready"))
        pipe.zcard(self._key("delayed"))
        pipe.scard(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        ready, delayed, active, completed, failed = await pipe.execute()
        return {
            "waiting": ready + delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    async def purge_finished(self, before: datetime) -> int:
        purged = 0
        for status in (JobStatus.COMPLETED, JobStatus.FAILED):
            key = self._key(status.value)
            expired = await self._redis.zrangebyscore(key, "-inf", before.timestamp())
            if not expired:
                continue
            pipe = self._redis.pipeline()
            for job_id in expired:
                pipe.delete(self._key("job", job_id))
            pipe.zrem(key, *expired)
            await pipe.execute()
            purged += len(expired)
        return purged


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_job_store(queue_config: Any = None) -> JobStore:
    """Factory: create the job store backend named by the queue config."""
    backend = getattr(queue_config, "backend", "memory") if queue_config else "memory"
    if backend == "redis":
        return RedisJobStore(
            redis_url=getattr(queue_config, "redis_url", "redis://localhost:6379"),
            prefix=getattr(queue_config, "key_prefix", "ai-analysis"),
        )
    if backend != "memory":
        logger.warning("unknown_queue_backend", backend=backend, fallback="memory")
    return InMemoryJobStore()
