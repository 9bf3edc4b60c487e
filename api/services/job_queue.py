"""
Downstream processing queue collaborator.

The identity core only enqueues work; chunking, tagging and embedding of
calls belong to whatever consumes the queue. ``enqueue_process_call_job``
wraps the submission itself in a small retry loop so a brief queue outage
doesn't drop a freshly stored transcript.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Optional

from api.services.resilience import EnqueueError
from config.resolution_config import (
    PROCESS_CALL_JOB_NAME,
    PROCESS_CALL_JOB_ATTEMPTS,
    PROCESS_CALL_JOB_BACKOFF_MS,
)
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ProcessCallJob:
    """Payload handed to the downstream processor."""
    call_id: str
    organization_id: str
    account_id: Optional[str]
    has_transcript: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class JobOptions:
    """Retry policy the queue applies to the job after it is accepted."""
    attempts: int = PROCESS_CALL_JOB_ATTEMPTS
    backoff_type: str = "exponential"
    backoff_delay_ms: int = PROCESS_CALL_JOB_BACKOFF_MS

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueuedJob:
    name: str
    payload: dict
    options: dict = field(default_factory=dict)


class JobQueue:
    """Interface for the downstream queue."""

    def add(self, name: str, payload: dict, options: Optional[dict] = None) -> Any:
        raise NotImplementedError


class InMemoryJobQueue(JobQueue):
    """Thread-safe list-backed queue; the default when no broker is wired in."""

    def __init__(self):
        self.jobs: list[QueuedJob] = []
        self._lock = threading.Lock()

    def add(self, name: str, payload: dict, options: Optional[dict] = None) -> QueuedJob:
        job = QueuedJob(name=name, payload=dict(payload), options=dict(options or {}))
        with self._lock:
            self.jobs.append(job)
        return job

    def drain(self) -> list[QueuedJob]:
        with self._lock:
            jobs, self.jobs = self.jobs, []
        return jobs

    def __len__(self) -> int:
        return len(self.jobs)


def enqueue_process_call_job(
    queue: JobQueue,
    job: ProcessCallJob,
    source: str,
    max_attempts: Optional[int] = None,
    base_delay_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Submit a process-call job, retrying the submission itself.

    Delay before retry N is ``base_delay_ms * N`` plus up to
    ``base_delay_ms`` of jitter.

    Raises:
        EnqueueError: when every attempt failed
    """
    attempts = max_attempts or settings.enqueue_max_attempts
    base_delay = base_delay_ms if base_delay_ms is not None else settings.enqueue_base_delay_ms
    options = JobOptions().to_dict()

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return queue.add(PROCESS_CALL_JOB_NAME, job.to_dict(), options)
        except Exception as e:
            last_error = e
            if attempt >= attempts:
                break
            delay_ms = base_delay * attempt + random.uniform(0, base_delay)
            logger.warning(
                f"Enqueue of {PROCESS_CALL_JOB_NAME} for call {job.call_id} from {source} failed "
                f"(attempt {attempt}/{attempts}): {e}. Retrying in {delay_ms:.0f}ms"
            )
            sleep(delay_ms / 1000.0)

    logger.error(
        f"Giving up on {PROCESS_CALL_JOB_NAME} for call {job.call_id} from {source} "
        f"after {attempts} attempts: {last_error}"
    )
    raise EnqueueError(PROCESS_CALL_JOB_NAME, attempts, last_error)


# Singleton instance
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get singleton JobQueue instance."""
    global _job_queue
    if _job_queue is None:
        _job_queue = InMemoryJobQueue()
    return _job_queue
