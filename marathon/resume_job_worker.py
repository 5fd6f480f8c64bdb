"""Worker that re-enqueues the paused batches of a job."""

from __future__ import annotations

import logging
import uuid

from marathon.jobs import Job
from marathon.process_batch_worker import BatchProcessingError, paused_jobs_key
from marathon.queue import Message
from marathon.util import STOPPED_JOB_STATUS, parse_process_batch_worker_message_array
from marathon.worker import (
    RESUME_JOB_WORKER_COMPLETED,
    RESUME_JOB_WORKER_ERROR,
    RESUME_JOB_WORKER_START,
    Worker,
)


class ResumeJobWorker:
    """Moves the paused batches of a job back onto the process batch queue."""

    def __init__(self, workers: Worker) -> None:
        self.workers = workers
        self.logger = logging.getLogger("marathon.worker.resume_job")
        self.logger.debug("Configured ResumeJobWorker successfully.")

    def _fail(self, job: Job, error: Exception) -> None:
        self.workers.job_store.tag_error(job.id, RESUME_JOB_WORKER_ERROR, str(error))
        self.workers.stats.incr(RESUME_JOB_WORKER_ERROR, job.labels(), 1)
        self.logger.error("Worker failure for job %s: %s", job.id, error)
        raise BatchProcessingError(str(error)) from error

    def process(self, message: Message) -> None:
        """Resume the job whose id is the first argument of the message."""
        try:
            job_id = uuid.UUID(str(message.args[0]))
        except (ValueError, IndexError) as exc:
            raise BatchProcessingError(str(exc)) from exc
        self.logger.info("starting resume_job_worker for job %s", job_id)

        try:
            job = self.workers.get_job(job_id)
        except Exception as exc:
            raise BatchProcessingError(str(exc)) from exc

        stats = self.workers.stats
        stats.incr(RESUME_JOB_WORKER_START, job.labels(), 1)
        key = paused_jobs_key(job_id)

        if job.status == STOPPED_JOB_STATUS:
            self.logger.info("stopped job %s in resume_job_worker", job_id)
            self.workers.redis.delete(key)
            stats.incr(RESUME_JOB_WORKER_COMPLETED, job.labels(), 1)
            return

        while True:
            batch_info = self.workers.redis.rpop(key)
            if batch_info is None:
                break
            try:
                paused = Message.from_json(batch_info)
                parsed = parse_process_batch_worker_message_array(paused.args)
                self.workers.create_process_batch_job(
                    str(parsed.job_id), parsed.app_name, parsed.users
                )
            except Exception as exc:
                self._fail(job, exc)

        stats.incr(RESUME_JOB_WORKER_COMPLETED, job.labels(), 1)
        self.logger.info("finished resume_job_worker for job %s", job_id)