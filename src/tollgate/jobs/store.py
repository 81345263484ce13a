"""
Job Store

Persistent queue of generation jobs. A job moves queued -> processing -> done
(or failed). The move out of ``queued`` is a single conditional UPDATE, so
however many processors race for the oldest job, exactly one of them wins it.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import json
import uuid
import structlog

from ..errors import JobNotFound
from ..persistence.database import Database, get_database
from ..persistence.models import (
    JobRecord,
    JOB_QUEUED,
    JOB_PROCESSING,
    JOB_DONE,
    JOB_FAILED,
    utcnow,
)

logger = structlog.get_logger()


class JobStore:
    """Repository for job records, including the claim primitive."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def enqueue(self, owner_email: str, job_type: str, payload: Dict[str, Any]) -> JobRecord:
        """Insert a new queued job."""
        job = JobRecord(
            id=str(uuid.uuid4()),
            owner_email=owner_email,
            type=job_type,
            payload=payload or {},
        )
        with self.db.guard("enqueue_job"):
            self.db.execute(
                """INSERT INTO job (id, owner_email, type, payload, status, progress, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                job.to_db_tuple()
            )
        logger.info("job_enqueued", job_id=job.id, type=job_type, owner=owner_email)
        return job

    def claim_oldest_queued(self) -> Optional[JobRecord]:
        """
        Atomically move the oldest queued job to ``processing``.

        Returns the claimed job, or None when nothing is queued or another
        caller claimed the candidate first.
        """
        token = uuid.uuid4().hex
        now = utcnow()
        row_lock = " FOR UPDATE SKIP LOCKED" if self.db.is_postgres else ""

        with self.db.guard("claim_job"):
            with self.db.transaction() as tx:
                tx.execute(
                    f"""UPDATE job
                        SET status = ?, claim_token = ?, claimed_at = ?, updated_at = ?
                        WHERE id = (
                            SELECT id FROM job
                            WHERE status = ?
                            ORDER BY created_at ASC, seq ASC
                            LIMIT 1{row_lock}
                        )
                        AND status = ?""",
                    (JOB_PROCESSING, token, now, now, JOB_QUEUED, JOB_QUEUED)
                )
                if tx.rowcount != 1:
                    return None
                rows = tx.execute("SELECT * FROM job WHERE claim_token = ?", (token,))

        job = JobRecord.from_row(rows[0])
        logger.info("job_claimed", job_id=job.id, type=job.type)
        return job

    def complete(self, job_id: str, result: Any, result_ref: Optional[str] = None) -> bool:
        """Mark a claimed job done. Returns False if it was not in ``processing``."""
        with self.db.guard("complete_job"):
            with self.db.transaction() as tx:
                tx.execute(
                    """UPDATE job
                       SET status = ?, progress = 100, result_payload = ?, result_ref = ?, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    (JOB_DONE, json.dumps(result), result_ref, utcnow(), job_id, JOB_PROCESSING)
                )
                updated = tx.rowcount == 1

        if updated:
            logger.info("job_completed", job_id=job_id, result_ref=result_ref)
        else:
            logger.warning("job_complete_skipped", job_id=job_id, reason="not_processing")
        return updated

    def fail(self, job_id: str, error: str) -> bool:
        """Mark a claimed job failed with an error message."""
        with self.db.guard("fail_job"):
            with self.db.transaction() as tx:
                tx.execute(
                    "UPDATE job SET status = ?, error = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (JOB_FAILED, error[:2000], utcnow(), job_id, JOB_PROCESSING)
                )
                updated = tx.rowcount == 1

        logger.warning("job_failed", job_id=job_id, error=error, recorded=updated)
        return updated

    def get_by_id(self, job_id: str) -> JobRecord:
        with self.db.guard("get_job"):
            rows = self.db.execute("SELECT * FROM job WHERE id = ?", (job_id,))
        if not rows:
            raise JobNotFound(job_id)
        return JobRecord.from_row(rows[0])

    def list_for_owner(self, owner_email: str, limit: int = 50) -> List[JobRecord]:
        """Newest first."""
        with self.db.guard("list_jobs"):
            rows = self.db.execute(
                "SELECT * FROM job WHERE owner_email = ? ORDER BY created_at DESC, seq DESC LIMIT ?",
                (owner_email, limit)
            )
        return [JobRecord.from_row(r) for r in rows]

    def list_stale_claims(self, older_than_seconds: float) -> List[JobRecord]:
        """Jobs claimed longer ago than the threshold and never finished."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat(
            timespec="microseconds"
        )
        with self.db.guard("list_stale_claims"):
            rows = self.db.execute(
                "SELECT * FROM job WHERE status = ? AND claimed_at < ? ORDER BY claimed_at ASC",
                (JOB_PROCESSING, cutoff)
            )
        return [JobRecord.from_row(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        with self.db.guard("count_jobs"):
            rows = self.db.execute("SELECT status, COUNT(*) as count FROM job GROUP BY status")
        return {r["status"]: r["count"] for r in rows}
