"""Worker that renders push templates for a batch of users and hands them to the push producer."""

from __future__ import annotations

import json
import logging
import math
import random
import time
import uuid
from typing import Any, Mapping

from marathon.jobs import Job
from marathon.queue import Message
from marathon.util import (
    BatchWorkerMessage,
    Template,
    build_message_from_template,
    build_topic_name,
    parse_process_batch_worker_message_array,
    random_element_from_slice,
)
from marathon.worker import (
    PROCESS_BATCH_WORKER_COMPLETED,
    PROCESS_BATCH_WORKER_ERROR,
    PROCESS_BATCH_WORKER_START,
    Worker,
)

NAME = "process_batch_worker"
FAILED_BATCHES_TTL = 7 * 24 * 3600
PAUSED_JOBS_TTL = 7 * 24 * 3600
CIRCUIT_BREAK_TTL = 60
RESCHEDULE_WINDOW = 100

_STATUS_SOURCE = "process_batche_worker"


class BatchProcessingError(RuntimeError):
    """Raised when a batch cannot be processed."""


def paused_jobs_key(job_id: uuid.UUID | str) -> str:
    """Return the Redis list that holds the paused batches of a job."""
    return f"{job_id}-pausedjobs"


def failed_batches_key(job_id: uuid.UUID | str) -> str:
    """Return the Redis counter of failed batches of a job."""
    return f"{job_id}-failedbatches"


def circuit_break_key(job_id: uuid.UUID | str) -> str:
    """Return the Redis flag set when a job trips its circuit breaker."""
    return f"{job_id}-circuitbreak"


class ProcessBatchWorker:
    """Sends the pushes of one batch of users of a job."""

    def __init__(self, workers: Worker) -> None:
        self.workers = workers
        self.logger = logging.getLogger("marathon.worker.process_batch")
        self.logger.debug("Configured ProcessBatchWorker successfully")

    def _fail(self, job: Job, error: Exception) -> None:
        self.workers.job_store.tag_error(job.id, NAME, str(error))
        self.workers.stats.incr(PROCESS_BATCH_WORKER_ERROR, job.labels(), 1)
        self.logger.error("Worker failure for job %s: %s", job.id, error)
        raise BatchProcessingError(str(error)) from error

    def _reschedule_and_fail(self, parsed: BatchWorkerMessage, error: Exception) -> None:
        at = time.time() + random.randrange(RESCHEDULE_WINDOW)
        self.workers.schedule_process_batch_job(
            str(parsed.job_id), parsed.app_name, parsed.users, at
        )
        self.logger.error("Rescheduled batch of job %s: %s", parsed.job_id, error)
        raise BatchProcessingError(str(error)) from error

    def _incr_failed_batches(self, job: Job, app_name: str) -> None:
        redis = self.workers.redis
        key = failed_batches_key(job.id)
        failed = int(redis.incr(key))
        if int(redis.ttl(key)) < 0:
            redis.expire(key, FAILED_BATCHES_TTL)
        ratio = failed / job.total_batches if job.total_batches else math.inf
        limit = self.workers.config.get_float("workers.processBatch.maxBatchFailure")
        if ratio >= limit:
            self.workers.job_store.update_job(job.id, status="circuitbreak")
            changed = redis.set(circuit_break_key(job.id), 1, ex=CIRCUIT_BREAK_TTL, nx=True)
            if changed:
                self.logger.warning(
                    "Job %s of app %s tripped its circuit breaker", job.id, app_name
                )

    def _send(
        self,
        service: str,
        topic: str,
        msg: Mapping[str, Any],
        message_metadata: Mapping[str, Any],
        push_metadata: Mapping[str, Any],
        device_token: str,
        expires_at: float,
        template_name: str,
    ) -> None:
        push_expiry = int(expires_at)
        producer = self.workers.push_producer
        if service == "apns":
            send = producer.send_apns_push
        elif service == "gcm":
            send = producer.send_gcm_push
        else:
            raise ValueError("service should be in ['apns', 'gcm']")
        send(topic, device_token, msg, message_metadata, push_metadata, push_expiry, template_name)

    def _update_job_users_info(self, job_id: uuid.UUID, num_users: int) -> None:
        self.workers.job_store.increment(job_id, "completed_tokens", num_users)

    def _update_job_batches_info(self, job_id: uuid.UUID) -> None:
        store = self.workers.job_store
        job = store.increment(job_id, "completed_batches")
        if not job.total_batches or job.completed_at:
            return
        if job.completed_batches == 1:
            store.tag_running(job_id, _STATUS_SOURCE, "starting")
        if job.completed_batches >= job.total_batches:
            self.logger.info(
                "Finished all batches of job %s (%d of %d)",
                job_id,
                job.completed_batches,
                job.total_batches,
            )
            store.tag_success(job_id, _STATUS_SOURCE, "Finished all batches")
            now = time.time()
            store.update_job(job_id, completed_at=now)
            delay = self.workers.config.get_duration(
                "workers.processBatch.intervalToSendCompletedJob"
            )
            self.workers.schedule_job_completed_job(str(job_id), now + delay)

    def _move_job_to_paused_queue(self, job: Job, message: Message) -> None:
        redis = self.workers.redis
        key = paused_jobs_key(job.id)
        redis.rpush(key, message.to_json())
        if int(redis.ttl(key)) < 0:
            redis.expire(key, PAUSED_JOBS_TTL)

    def _pick_template(
        self, job: Job, templates: Mapping[str, Mapping[str, Template]], locale: str
    ) -> tuple[str, Template]:
        names = job.template_names
        name = random_element_from_slice(names) if len(names) > 1 else job.template_name
        by_locale = templates.get(name, {})
        template = by_locale.get(locale.lower()) or by_locale.get("en")
        if template is None:
            self._incr_failed_batches(job, "")
            self._fail(job, LookupError("there is no template for the given locale or 'en'"))
        return name, template

    def process(self, message: Message) -> None:
        """Send the pushes of the batch carried by a queue message."""
        try:
            parsed = parse_process_batch_worker_message_array(message.args)
        except (ValueError, TypeError) as exc:
            raise BatchProcessingError(str(exc)) from exc
        self.logger.debug("Parsed message info successfully.")

        try:
            job = self.workers.get_job(parsed.job_id)
        except Exception as exc:
            self._reschedule_and_fail(parsed, exc)

        stats = self.workers.stats
        stats.incr(PROCESS_BATCH_WORKER_START, job.labels(), 1)

        if job.is_expired():
            self.logger.info("Job %s expired", job.id)
            stats.incr(PROCESS_BATCH_WORKER_COMPLETED, job.labels(), 1)
            return
        if job.status in ("circuitbreak", "paused"):
            self.logger.info("Job %s is %s", job.id, job.status)
            self._move_job_to_paused_queue(job, message)
            stats.incr(PROCESS_BATCH_WORKER_COMPLETED, job.labels(), 1)
            return
        if job.status == "stopped":
            self.logger.info("Job %s stopped", job.id)
            stats.incr(PROCESS_BATCH_WORKER_COMPLETED, job.labels(), 1)
            return

        try:
            templates = self.workers.job_store.templates_by_name_and_locale(job)
        except Exception as exc:
            self._incr_failed_batches(job, parsed.app_name)
            self._reschedule_and_fail(parsed, exc)

        topic_template = self.workers.config.get_string("workers.topicTemplate")
        topic = build_topic_name(parsed.app_name, job.service, topic_template)

        errors = 0
        for user in parsed.users:
            template_name, template = self._pick_template(job, templates, user.locale)
            try:
                msg = json.loads(build_message_from_template(template, job.context))
            except (ValueError, TypeError) as exc:
                self._incr_failed_batches(job, parsed.app_name)
                self._fail(job, exc)

            push_metadata: dict[str, Any] = {
                "userId": user.user_id,
                "pushTime": int(time.time()),
                "templateName": template_name,
                "jobId": str(job.id),
                "pushType": "massive",
                "muid": str(uuid.uuid4()),
            }
            dry_run = job.metadata.get("dryRun")
            if isinstance(dry_run, bool):
                push_metadata["dryRun"] = dry_run

            try:
                self._send(
                    job.service,
                    topic,
                    msg,
                    job.metadata,
                    push_metadata,
                    user.token,
                    job.expires_at,
                    template_name,
                )
            except ValueError:
                raise
            except Exception as exc:
                errors += 1
                self.logger.error(
                    "Failed to send message to %s on topic %s: %s", job.service, topic, exc
                )

        try:
            self._update_job_batches_info(parsed.job_id)
            self._update_job_users_info(parsed.job_id, len(parsed.users) - errors)
        except Exception as exc:
            self._fail(job, exc)

        limit = self.workers.config.get_float("workers.processBatch.maxUserFailureInBatch")
        if errors / len(parsed.users) > limit:
            self._incr_failed_batches(job, parsed.app_name)
            self._fail(
                job,
                RuntimeError(
                    "failed to send message to several users, considering batch as failed"
                ),
            )

        stats.incr(PROCESS_BATCH_WORKER_COMPLETED, job.labels(), 1)
        self.logger.info("Finished batch of job %s", job.id)