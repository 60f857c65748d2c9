"""Job handlers: route each analysis JobType to the AnalysisEngine."""
from __future__ import annotations

from typing import Any

from analysis.engine import AnalysisEngine
from core.errors import PermanentError
from job_queue.queue import JobHandler, ProgressFn
from models.schemas import Job, JobType


def _require_content(job: Job) -> str:
    content = (job.payload.get("content") or "").strip()
    if not content:
        raise PermanentError(f"Job {job.id} has no content to analyze", code="validation_error")
    return content


def build_analysis_handlers(engine: AnalysisEngine) -> dict[JobType, JobHandler]:

    async def analyze_sentiment(job: Job, progress: ProgressFn) -> dict[str, Any]:
        content = _require_content(job)
        await progress(10)
        return await engine.analyze_sentiment(
            job.entity_id, content, job.payload.get("conversation_context", ""),
        )

    async def categorize_message(job: Job, progress: ProgressFn) -> dict[str, Any]:
        content = _require_content(job)
        await progress(10)
        return await engine.categorize_message(
            job.entity_id, content, job.payload.get("existing_categories"),
        )

    async def generate_suggestions(job: Job, progress: ProgressFn) -> dict[str, Any]:
        content = _require_content(job)
        await progress(10)
        return await engine.generate_suggestions(
            job.entity_id,
            content,
            conversation_id=job.payload.get("conversation_id", ""),
            history=job.payload.get("conversation_history"),
            tone=job.payload.get("tone") or "professional",
        )

    return {
        JobType.ANALYZE_SENTIMENT: analyze_sentiment,
        JobType.CATEGORIZE_MESSAGE: categorize_message,
        JobType.GENERATE_SUGGESTIONS: generate_suggestions,
    }
