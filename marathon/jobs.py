"""Push jobs, an in-memory job and template store, and the push producer interface."""

from __future__ import annotations

import copy
import dataclasses
import threading
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from marathon.util import Template


class JobNotFoundError(LookupError):
    """Raised when a job id is not in the store."""


@dataclass
class Job:
    """A massive push job. Times are Unix seconds; zero means unset."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    app_id: uuid.UUID | None = None
    app_name: str = ""
    template_name: str = ""
    service: str = "apns"
    status: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    filters: dict[str, Any] = field(default_factory=dict)
    csv_path: str = ""
    control_group: float = 0.0
    localized: bool = False
    past_time_strategy: str = ""
    starts_at: float = 0.0
    expires_at: float = 0.0
    completed_at: float = 0.0
    total_batches: int = 0
    completed_batches: int = 0
    total_tokens: int = 0
    completed_tokens: int = 0
    total_users: int = 0
    created_by: str = ""

    @property
    def template_names(self) -> list[str]:
        """The comma separated template names of the job."""
        return self.template_name.split(",")

    def is_expired(self, now: float | None = None) -> bool:
        """Tell whether the job has an expiry that has passed."""
        now = time.time() if now is None else now
        return 0 < self.expires_at < now

    def labels(self) -> list[str]:
        """Metric tags describing the job."""
        return [
            f"app:{self.app_name}",
            f"service:{self.service}",
            f"template:{self.template_name}",
        ]


_JOB_FIELDS = frozenset(f.name for f in dataclasses.fields(Job))


class JobStore:
    """Thread-safe store of jobs, their templates and their status history."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[uuid.UUID, Job] = {}
        self._templates: list[tuple[uuid.UUID | None, Template]] = []
        self._events: defaultdict[uuid.UUID, list[tuple[str, str, str]]] = defaultdict(list)

    def add_job(self, job: Job) -> Job:
        """Store a job and return a copy of it."""
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def remove_job(self, job_id: uuid.UUID) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def _require(self, job_id: uuid.UUID) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"job {job_id} not found") from None

    def get_job(self, job_id: uuid.UUID) -> Job:
        """Return a copy of the stored job."""
        with self._lock:
            return copy.deepcopy(self._require(job_id))

    def update_job(self, job_id: uuid.UUID, **changes: Any) -> Job:
        """Set fields of a stored job and return the updated copy."""
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise AttributeError(f"unknown job fields: {', '.join(sorted(unknown))}")
        with self._lock:
            job = self._require(job_id)
            for name, value in changes.items():
                setattr(job, name, value)
            return copy.deepcopy(job)

    def increment(self, job_id: uuid.UUID, field_name: str, amount: int = 1) -> Job:
        """Atomically add to a numeric field and return the updated copy."""
        if field_name not in _JOB_FIELDS:
            raise AttributeError(f"unknown job field: {field_name}")
        with self._lock:
            job = self._require(job_id)
            setattr(job, field_name, getattr(job, field_name) + amount)
            return copy.deepcopy(job)

    def add_template(self, app_id: uuid.UUID | None, template: Template) -> None:
        with self._lock:
            self._templates.append((app_id, copy.deepcopy(template)))

    def remove_templates(self, app_id: uuid.UUID | None = None) -> None:
        """Remove the templates of one app, or all of them."""
        with self._lock:
            self._templates = [
                (owner, tpl)
                for owner, tpl in self._templates
                if app_id is not None and owner != app_id
            ]

    def templates_by_name_and_locale(self, job: Job) -> dict[str, dict[str, Template]]:
        """Group the job's templates by name, then locale."""
        names = set(job.template_names)
        grouped: dict[str, dict[str, Template]] = {}
        with self._lock:
            for owner, tpl in self._templates:
                if owner == job.app_id and tpl.name in names:
                    grouped.setdefault(tpl.name, {})[tpl.locale] = copy.deepcopy(tpl)
        if not grouped:
            raise LookupError(f"no templates found for job {job.id}")
        return grouped

    def _tag(self, job_id: uuid.UUID, level: str, source: str, message: str) -> None:
        with self._lock:
            self._events[job_id].append((level, source, message))

    def tag_error(self, job_id: uuid.UUID, source: str, message: str) -> None:
        self._tag(job_id, "error", source, message)

    def tag_running(self, job_id: uuid.UUID, source: str, message: str) -> None:
        self._tag(job_id, "running", source, message)

    def tag_success(self, job_id: uuid.UUID, source: str, message: str) -> None:
        self._tag(job_id, "success", source, message)

    def events(self, job_id: uuid.UUID) -> list[tuple[str, str, str]]:
        """The (level, source, message) history of a job."""
        with self._lock:
            return list(self._events.get(job_id, []))

    def ping(self) -> bool:
        return True


class PushProducer(Protocol):
    """Sends push notifications towards the delivery service."""

    def send_apns_push(
        self,
        topic: str,
        device_token: str,
        payload: Mapping[str, Any],
        message_metadata: Mapping[str, Any],
        push_metadata: Mapping[str, Any],
        push_expiry: int,
        template_name: str,
    ) -> None: ...

    def send_gcm_push(
        self,
        topic: str,
        device_token: str,
        payload: Mapping[str, Any],
        message_metadata: Mapping[str, Any],
        push_metadata: Mapping[str, Any],
        push_expiry: int,
        template_name: str,
    ) -> None: ...