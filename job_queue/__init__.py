"""
Job Queue — Moves AI analysis off the request path.

- API handlers ENQUEUE typed jobs and return a job id immediately
- Worker tasks EXECUTE them with bounded, backed-off retries
- Redis (production) and in-memory (dev) stores share one interface
"""
from job_queue.queue import JobQueue
from job_queue.store import JobStore, InMemoryJobStore, RedisJobStore, create_job_store

__all__ = ["JobQueue", "JobStore", "InMemoryJobStore", "RedisJobStore", "create_job_store"]
