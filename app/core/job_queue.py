"""
Durable build queue backed by the SQLite database.

Each job id is enqueued once. Workers claim items with a compare-and-set
update and hold a lease; an item whose lease expires (worker died) becomes
claimable again, so delivery is at-least-once. A worker renews its lease
while it is processing, so only a dead worker loses its item. Acked items
are deleted.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import sessionmaker

from app.core.config import get_config
from app.db.database import SessionLocal
from app.db.models import QueueItem

logger = logging.getLogger(__name__)

# Claim attempts when another worker wins the compare-and-set
MAX_CLAIM_RETRIES = 5


@dataclass
class QueuedBuild:
    """A claimed queue item."""
    job_id: str
    payload: dict[str, Any]
    attempts: int

    @property
    def is_redelivery(self) -> bool:
        return self.attempts > 1


class BuildQueue:
    """Channel between submission and workers."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, lease_s: Optional[float] = None):
        self._session_factory = session_factory or SessionLocal
        self._lease_s = lease_s if lease_s is not None else get_config().queue_lease_s
        self._work_available = threading.Condition()

    @property
    def lease_s(self) -> float:
        return self._lease_s

    def enqueue(self, job_id: str, payload: dict[str, Any]) -> str:
        """Add a job. Enqueueing the same job id twice is a no-op."""
        db = self._session_factory()
        try:
            if db.get(QueueItem, job_id) is None:
                db.add(QueueItem(
                    job_id=job_id,
                    payload=json.dumps(payload),
                    state="ready",
                    attempts=0,
                    enqueued_at=time.time(),
                ))
                db.commit()
                logger.info(f"job_enqueued job_id={job_id}")
        finally:
            db.close()

        with self._work_available:
            self._work_available.notify_all()
        return job_id

    def claim(self, worker_id: str) -> Optional[QueuedBuild]:
        """Claim the oldest available item, or return None if there is none."""
        db = self._session_factory()
        try:
            for _ in range(MAX_CLAIM_RETRIES):
                now = time.time()
                candidate = (
                    db.query(QueueItem)
                    .filter(or_(
                        QueueItem.state == "ready",
                        and_(QueueItem.state == "claimed", QueueItem.lease_expires_at < now),
                    ))
                    .order_by(QueueItem.enqueued_at.asc())
                    .first()
                )
                if candidate is None:
                    return None

                job_id = candidate.job_id
                payload = candidate.payload
                prev_state = candidate.state
                prev_attempts = candidate.attempts

                updated = (
                    db.query(QueueItem)
                    .filter(
                        QueueItem.job_id == job_id,
                        QueueItem.state == prev_state,
                        QueueItem.attempts == prev_attempts,
                    )
                    .update(
                        {
                            QueueItem.state: "claimed",
                            QueueItem.attempts: prev_attempts + 1,
                            QueueItem.claimed_by: worker_id,
                            QueueItem.lease_expires_at: now + self._lease_s,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()

                if updated == 1:
                    if prev_state == "claimed":
                        logger.warning(f"job_redelivered job_id={job_id} attempts={prev_attempts + 1}")
                    return QueuedBuild(
                        job_id=job_id,
                        payload=json.loads(payload) if payload else {},
                        attempts=prev_attempts + 1,
                    )
                # Lost the race to another worker; look again
                db.expire_all()
            return None
        finally:
            db.close()

    def renew(self, job_id: str, worker_id: str) -> bool:
        """
        Extend the lease of an item this worker holds.
        Returns False if the item is gone or now held by another worker.
        """
        db = self._session_factory()
        try:
            updated = (
                db.query(QueueItem)
                .filter(
                    QueueItem.job_id == job_id,
                    QueueItem.state == "claimed",
                    QueueItem.claimed_by == worker_id,
                )
                .update(
                    {QueueItem.lease_expires_at: time.time() + self._lease_s},
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    def ack(self, job_id: str) -> None:
        """Remove a processed item."""
        db = self._session_factory()
        try:
            db.query(QueueItem).filter(QueueItem.job_id == job_id).delete()
            db.commit()
        finally:
            db.close()

    def wait_for_work(self, timeout: float) -> None:
        """Sleep until something is enqueued in this process or timeout elapses."""
        with self._work_available:
            self._work_available.wait(timeout=timeout)

    def wake_all(self) -> None:
        with self._work_available:
            self._work_available.notify_all()

    def stats(self) -> dict[str, int]:
        """Item counts by state."""
        now = time.time()
        db = self._session_factory()
        try:
            ready = db.query(QueueItem).filter(QueueItem.state == "ready").count()
            claimed = db.query(QueueItem).filter(QueueItem.state == "claimed").count()
            expired = (
                db.query(QueueItem)
                .filter(QueueItem.state == "claimed", QueueItem.lease_expires_at < now)
                .count()
            )
            return {"waiting": ready, "active": claimed - expired, "stalled": expired}
        finally:
            db.close()


# Global queue instance
build_queue = BuildQueue()
