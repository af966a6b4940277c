import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import config
from errors import InvalidTransition
from models import STAGE_ORDER, TERMINAL_STAGES, ImportJob, ImportStats, JobStage

logger = logging.getLogger(__name__)


class JobTracker:
    """
    In-memory registry of import jobs.

    The job map is private; callers get deep-copied snapshots from get() and
    change jobs only through mutate() and the helpers built on it.
    """

    def __init__(self, retention: timedelta = config.JOB_RETENTION,
                 message_limit: int = config.MESSAGE_LOG_LIMIT):
        self.retention = retention
        self.message_limit = message_limit
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = threading.Lock()

    def create(self) -> ImportJob:
        now = datetime.now()
        job = ImportJob(id=uuid.uuid4().hex, started_at=now, updated_at=now)
        with self._lock:
            self._jobs[job.id] = job
            return job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.stage not in TERMINAL_STAGES)

    def mutate(self, job_id: str, change: Callable[[ImportJob], None]) -> ImportJob:
        """Apply change to the stored job under the registry lock and return a snapshot."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job {job_id} not found")
            change(job)
            job.updated_at = datetime.now()
            return job.model_copy(deep=True)

    def advance(self, job_id: str, stage: JobStage, message: Optional[str] = None) -> ImportJob:
        """
        Move a job forward to stage.

        A job in error stays in error. Moving to done marks the job finished at 100%.

        Raises:
            InvalidTransition: If stage is behind the job's current stage
        """
        def change(job: ImportJob) -> None:
            if job.stage == JobStage.ERROR:
                return
            if job.stage == JobStage.DONE and stage != JobStage.DONE:
                raise InvalidTransition(job.stage.value, stage.value)
            if stage != JobStage.ERROR and STAGE_ORDER.index(stage) < STAGE_ORDER.index(job.stage):
                raise InvalidTransition(job.stage.value, stage.value)
            job.stage = stage
            if stage == JobStage.DONE:
                job.done = True
                job.percent = 100
            if message:
                self._append(job, message)

        return self.mutate(job_id, change)

    def set_percent(self, job_id: str, percent: float) -> ImportJob:
        def change(job: ImportJob) -> None:
            job.percent = max(job.percent, min(100, int(percent)))

        return self.mutate(job_id, change)

    def log(self, job_id: str, message: str) -> ImportJob:
        logger.info(f"[{job_id}] {message}")
        return self.mutate(job_id, lambda job: self._append(job, message))

    def update_stats(self, job_id: str, stats: ImportStats) -> ImportJob:
        def change(job: ImportJob) -> None:
            job.stats = stats.model_copy(deep=True)

        return self.mutate(job_id, change)

    def fail(self, job_id: str, error: str) -> ImportJob:
        def change(job: ImportJob) -> None:
            if job.stage in TERMINAL_STAGES:
                return
            job.stage = JobStage.ERROR
            job.error = error
            job.done = True
            self._append(job, f"Error: {error}")

        return self.mutate(job_id, change)

    def prune(self) -> int:
        """Drop finished jobs not updated within the retention window."""
        cutoff = datetime.now() - self.retention
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.stage in TERMINAL_STAGES and job.updated_at < cutoff
            ]
            for job_id in expired:
                logger.info(f"Cleaning up old job: {job_id}")
                del self._jobs[job_id]
        return len(expired)

    def _append(self, job: ImportJob, message: str) -> None:
        job.messages.append(message)
        if len(job.messages) > self.message_limit:
            del job.messages[:-self.message_limit]
