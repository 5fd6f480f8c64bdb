"""Worker configuration, metrics and the shared context that enqueues worker jobs."""

from __future__ import annotations

import logging
import os
import random
import re
import socket
import time
import uuid
from collections import Counter
from typing import Any, Iterable, Mapping, Sequence

import yaml

from marathon.jobs import Job, JobStore
from marathon.queue import Producer
from marathon.util import User, compress_users, get_push_db_table_name

ENV_PREFIX = "MARATHON"

DEFAULTS: dict[str, Any] = {
    "workers.redis.server": "localhost:6379",
    "workers.redis.database": "0",
    "workers.redis.poolSize": "10",
    "workers.statsPort": 8081,
    "workers.concurrency": 10,
    "database.url": "postgres://localhost:5432/marathon?sslmode=disable",
    "workers.statsd.host": "127.0.0.1:8125",
    "workers.statsd.prefix": "marathon.",
}

PROCESS_BATCH_WORKER_START = "starting_process_batch_worker"
PROCESS_BATCH_WORKER_COMPLETED = "completed_process_batch_worker"
PROCESS_BATCH_WORKER_ERROR = "error_process_batch_worker"
RESUME_JOB_WORKER_START = "starting_resume_job_worker"
RESUME_JOB_WORKER_COMPLETED = "completed_resume_job_worker"
RESUME_JOB_WORKER_ERROR = "error_resume_job_worker"

DIRECT_BATCH_SIZE = 100_000

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}
_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "µs": 1e-6, "μs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

logger = logging.getLogger(__name__)


def _flatten(values: Mapping[Any, Any], prefix: str = ""):
    for key, value in values.items():
        name = f"{prefix}{str(key).lower()}"
        if isinstance(value, Mapping) and value:
            yield from _flatten(value, name + ".")
        yield name, value


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError:
            return 0
    return 0


def _to_float(value: Any) -> float:
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return 0.0
    return 0.0


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip() in _TRUE
    return False


def _parse_duration(text: str) -> float:
    text = text.strip()
    if text in ("", "0"):
        return 0.0
    sign = -1.0 if text.startswith("-") else 1.0
    body = text.lstrip("+-")
    total, pos = 0.0, 0
    for match in _DURATION_PART.finditer(body):
        if match.start() != pos:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(body):
        raise ValueError(f"invalid duration {text!r}")
    return sign * total


def _to_duration(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return value * 1e-9
    if isinstance(value, str):
        text = value if any(c in value for c in "nsuµmh") else value + "ns"
        try:
            return _parse_duration(text)
        except ValueError:
            return 0.0
    return 0.0


class Config:
    """Dotted, case-insensitive settings; MARATHON_* environment variables win."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values = dict(_flatten(values or {}))
        self._defaults = {key.lower(): value for key, value in DEFAULTS.items()}

    def get(self, key: str, default: Any = None) -> Any:
        name = key.lower()
        env = os.environ.get(f"{ENV_PREFIX}_{name.upper().replace('.', '_')}")
        if env is not None:
            return env
        if name in self._values:
            return self._values[name]
        if name in self._defaults:
            return self._defaults[name]
        return default

    def get_int(self, key: str) -> int:
        return _to_int(self.get(key))

    def get_float(self, key: str) -> float:
        return _to_float(self.get(key))

    def get_string(self, key: str) -> str:
        return _to_string(self.get(key))

    def get_bool(self, key: str) -> bool:
        return _to_bool(self.get(key))

    def get_duration(self, key: str) -> float:
        """Return a duration setting in seconds; bare numbers are nanoseconds."""
        return _to_duration(self.get(key))


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read a YAML configuration file."""
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError(f"configuration in {os.fspath(path)} must be a mapping")
    logger.info("Loaded config file %s", os.fspath(path))
    return Config(data)


class StatsdClient:
    """Sends DogStatsD counters and timings over UDP."""

    def __init__(self, host: str, prefix: str = "") -> None:
        address, _, port = host.rpartition(":")
        if not address or not port.isdigit():
            raise ValueError(f"statsd host must be host:port, got {host!r}")
        family, _, _, _, sockaddr = socket.getaddrinfo(
            address, int(port), type=socket.SOCK_DGRAM
        )[0]
        self.address = sockaddr
        self.prefix = prefix
        self._socket = socket.socket(family, socket.SOCK_DGRAM)

    def _send(self, name: str, value: str, kind: str, tags: Iterable[str], rate: float) -> None:
        if rate < 1 and random.random() > rate:
            return
        line = f"{self.prefix}{name}:{value}|{kind}"
        if rate < 1:
            line += f"|@{rate}"
        tags = list(tags or ())
        if tags:
            line += "|#" + ",".join(tags)
        try:
            self._socket.sendto(line.encode("utf-8"), self.address)
        except OSError as exc:
            logger.debug("statsd send failed: %s", exc)

    def incr(self, name: str, tags: Iterable[str] = (), rate: float = 1.0) -> None:
        self._send(name, "1", "c", tags, rate)

    def timing(self, name: str, seconds: float, tags: Iterable[str] = (), rate: float = 1.0) -> None:
        self._send(name, f"{seconds * 1000:.6f}", "ms", tags, rate)

    def close(self) -> None:
        self._socket.close()


class _MemoryStats:
    """Keeps counters and timings in memory when no statsd client is configured."""

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.timings: dict[str, list[float]] = {}

    def incr(self, name: str, tags: Iterable[str] = (), rate: float = 1.0) -> None:
        self.counters[name] += 1

    def timing(self, name: str, seconds: float, tags: Iterable[str] = (), rate: float = 1.0) -> None:
        self.timings.setdefault(name, []).append(seconds)


class Worker:
    """Shared context of the workers: configuration, stores, clients and job enqueuing.

    Every ``at`` argument is a Unix time in seconds.
    """

    def __init__(
        self,
        config: Config,
        redis_client: Any,
        job_store: JobStore,
        push_producer: Any = None,
        stats: Any = None,
        push_db: Any = None,
    ) -> None:
        self.config = config
        self.redis = redis_client
        self.job_store = job_store
        self.push_producer = push_producer
        self.stats = stats if stats is not None else _MemoryStats()
        self.push_db = push_db
        self.producer = Producer(redis_client)
        self.logger = logging.getLogger("marathon.worker")

    def create_csv_split_job(self, job: Job) -> str:
        retries = self.config.get_int("workers.csvSplitWorker.maxRetries")
        return self.producer.enqueue(
            "csv_split_worker", "Add", str(job.id), retry=True, retry_count=retries
        )

    def schedule_csv_split_job(self, job: Job, at: float) -> str:
        retries = self.config.get_int("workers.csvSplitWorker.maxRetries")
        return self.producer.enqueue(
            "csv_split_worker", "Add", str(job.id), retry=True, retry_count=retries, at=at
        )

    def create_batches_job(self, part: Any) -> str:
        retries = self.config.get_int("workers.createBatches.maxRetries")
        return self.producer.enqueue(
            "create_batches_worker", "Add", part, retry=True, retry_count=retries
        )

    def create_direct_batches_job(self, job: Job) -> None:
        self._create_direct_batches_job(job, None)

    def schedule_direct_batches_job(self, job: Job, at: float) -> None:
        self._create_direct_batches_job(job, at)

    def _query_one(self, query: str) -> int:
        if self.push_db is None:
            raise RuntimeError("no push database configured")
        cursor = self.push_db.cursor()
        try:
            cursor.execute(query)
            row = cursor.fetchone()
        finally:
            cursor.close()
        if row is None:
            raise LookupError(f"no rows returned for: {query}")
        return int(row[0]) if row[0] is not None else 0

    def _create_direct_batches_job(self, job: Job, at: float | None) -> None:
        retries = self.config.get_int("workers.direct.maxRetries")
        job = self.job_store.get_job(job.id)
        table = get_push_db_table_name(job.app_name, job.service)
        estimate = self._query_one(
            f"SELECT reltuples::BIGINT AS estimate FROM pg_class WHERE relname = '{table}';"
        )
        max_seq_id = self._query_one(f"SELECT max(seq_id) FROM {table};")
        estimate = estimate or 1

        start = 0
        while start < max_seq_id + 1:
            self.producer.enqueue(
                "direct_worker",
                "Add",
                {
                    "SmallestSeqID": start,
                    "BiggestSeqID": start + DIRECT_BATCH_SIZE,
                    "JobUUID": str(job.id),
                },
                retry=True,
                retry_count=retries,
                at=at,
            )
            start += DIRECT_BATCH_SIZE

        self.job_store.update_job(job.id, total_tokens=estimate)
        self.job_store.update_job(job.id, total_batches=start // DIRECT_BATCH_SIZE)

    def create_process_batch_job(self, job_id: str, app_name: str, users: Sequence[User]) -> str:
        compressed = compress_users(users)
        return self.producer.enqueue(
            "process_batch_worker", "Add", [str(job_id), app_name, compressed]
        )

    def create_resume_job(self, job_ids: Sequence[str]) -> str:
        retries = self.config.get_int("workers.resume.maxRetries")
        return self.producer.enqueue(
            "resume_job_worker", "Add", [str(i) for i in job_ids], retry=True, retry_count=retries
        )

    def schedule_create_batches_job(self, job_ids: Sequence[str], at: float) -> str:
        return self.producer.enqueue(
            "create_batches_worker", "Add", [str(i) for i in job_ids], retry=True, at=at
        )

    def schedule_create_batches_from_filters_job(self, job_ids: Sequence[str], at: float) -> str:
        return self.producer.enqueue(
            "create_batches_from_filters_worker",
            "Add",
            [str(i) for i in job_ids],
            retry=True,
            at=at,
        )

    def schedule_process_batch_job(
        self, job_id: str, app_name: str, users: Sequence[User], at: float
    ) -> str:
        compressed = compress_users(users)
        return self.producer.enqueue(
            "process_batch_worker", "Add", [str(job_id), app_name, compressed], at=at
        )

    def schedule_job_completed_job(self, job_id: str, at: float) -> str:
        retries = self.config.get_int("workers.jobCompleted.maxRetries")
        return self.producer.enqueue(
            "job_completed_worker", "Add", [str(job_id)], retry=True, retry_count=retries, at=at
        )

    def send_control_group_to_redis(self, job: Job, ids: Sequence[str]) -> None:
        """Push the control group user ids to the job's control list."""
        start = time.monotonic()
        if ids:
            self.redis.lpush(f"{job.id}-CONTROL", *ids)
        self.stats.timing("save_control_group", time.monotonic() - start, job.labels(), 1)

    def get_job(self, job_id: uuid.UUID | str) -> Job:
        return self.job_store.get_job(uuid.UUID(str(job_id)))

    def health_status(self) -> dict[str, bool]:
        """Report whether the job store, push database and Redis respond."""
        try:
            marathon_ok = bool(self.job_store.ping())
        except Exception:
            marathon_ok = False
        try:
            self._query_one("SELECT 1")
            push_ok = True
        except Exception:
            push_ok = False
        try:
            pong = self.redis.ping()
            redis_ok = pong is True or pong in ("PONG", b"PONG")
        except Exception:
            redis_ok = False
        return {
            "marathon_db_healthy": marathon_ok,
            "push_db_healthy": push_ok,
            "redis_healthy": redis_ok,
        }