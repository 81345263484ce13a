"""
Job Processor

One invocation claims at most one job, runs its handler, stores any artifact
and records the outcome. Eager triggers, the periodic sweep and the admin
endpoint all go through ``process_one``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from ..persistence.models import JOB_DONE, JOB_FAILED
from ..storage.object_store import ObjectStore
from .handlers import HandlerContext, get_handler
from .store import JobStore

logger = structlog.get_logger()


@dataclass
class ProcessResult:
    processed: int
    job_id: Optional[str] = None
    status: Optional[str] = None
    result_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": True, "processed": self.processed}
        if self.job_id:
            body["job_id"] = self.job_id
            body["status"] = self.status
        if self.result_ref:
            body["r2_key"] = self.result_ref
        return body


def artifact_key(job_id: str, filename: str) -> str:
    return f"jobs/{job_id}/{filename}"


class JobProcessor:
    """Claims and runs queued jobs one at a time."""

    def __init__(
        self,
        store: JobStore,
        object_store: Optional[ObjectStore] = None,
        context: Optional[HandlerContext] = None,
    ):
        self.store = store
        self.object_store = object_store
        self.context = context or HandlerContext()

    async def process_one(self) -> ProcessResult:
        job = self.store.claim_oldest_queued()
        if job is None:
            return ProcessResult(processed=0)

        handler = get_handler(job.type)
        if handler is None:
            self.store.fail(job.id, f"No handler for job type: {job.type}")
            return ProcessResult(processed=1, job_id=job.id, status=JOB_FAILED)

        try:
            outcome = await handler(job, self.context)
        except Exception as e:
            logger.exception("job_handler_error", job_id=job.id, type=job.type)
            self.store.fail(job.id, f"{type(e).__name__}: {e}")
            return ProcessResult(processed=1, job_id=job.id, status=JOB_FAILED)

        result_ref = None
        if outcome.artifact is not None and self.object_store is not None:
            key = artifact_key(job.id, outcome.artifact.filename)
            try:
                result_ref = self.object_store.put(
                    key,
                    outcome.artifact.content,
                    outcome.artifact.content_type,
                    {"job_id": job.id, "type": job.type},
                )
            except Exception as e:
                # The inline result is still downloadable
                logger.warning("artifact_store_failed", job_id=job.id, key=key, error=str(e))

        self.store.complete(job.id, outcome.result, result_ref)
        return ProcessResult(processed=1, job_id=job.id, status=JOB_DONE, result_ref=result_ref)
