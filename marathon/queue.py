"""Redis-backed job queue: queue messages and the producer that enqueues them."""

from __future__ import annotations

import dataclasses
import json
import secrets
import time
import uuid
from typing import Any

SCHEDULE_KEY = "schedule"
QUEUES_KEY = "queues"


def queue_key(queue: str) -> str:
    """Return the Redis list that holds the pending messages of a queue."""
    return f"queue:{queue}"


def _json_default(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"cannot serialise {type(value).__name__} in a queue message")


def dumps(value: Any) -> str:
    """Serialise a message payload to compact JSON with sorted keys."""
    return json.dumps(
        value, separators=(",", ":"), sort_keys=True, ensure_ascii=False, default=_json_default
    )


class Message:
    """A queue message: a JSON object carrying queue, class, args and job id."""

    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data

    @classmethod
    def from_json(cls, text: str | bytes) -> "Message":
        """Parse a message from its JSON text."""
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid queue message: {exc}") from None
        if not isinstance(data, dict):
            raise ValueError("queue message must be a JSON object")
        return cls(data)

    def to_json(self) -> str:
        """Return the JSON text of the message."""
        return dumps(self.data)

    @property
    def args(self) -> list[Any]:
        """The positional arguments of the message."""
        value = self.data.get("args")
        if not isinstance(value, list):
            raise ValueError("message args must be an array")
        return value

    @property
    def queue(self) -> str:
        return self.data.get("queue", "")

    @property
    def class_name(self) -> str:
        return self.data.get("class", "")

    @property
    def jid(self) -> str:
        return self.data.get("jid", "")

    @property
    def at(self) -> float | None:
        return self.data.get("at")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.data == other.data

    def __repr__(self) -> str:
        return f"Message({self.data!r})"


class Producer:
    """Pushes messages onto Redis queues, or onto the schedule when due later."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def enqueue(
        self,
        queue: str,
        class_name: str,
        args: Any,
        retry: bool = False,
        retry_count: int = 0,
        at: float | None = None,
    ) -> str:
        """Enqueue a message and return its job id.

        ``at`` is a Unix time in seconds; a message due in the future goes to
        the schedule sorted set, any other straight onto the queue list.
        """
        now = time.time()
        jid = secrets.token_hex(12)
        data: dict[str, Any] = {
            "queue": queue,
            "class": class_name,
            "args": args,
            "jid": jid,
            "enqueued_at": now,
        }
        if retry:
            data["retry"] = True
        if retry_count:
            data["retry_count"] = retry_count
        if at is not None:
            data["at"] = at
        payload = dumps(data)
        if at is not None and at > now:
            self.client.zadd(SCHEDULE_KEY, {payload: at})
        else:
            self.client.sadd(QUEUES_KEY, queue)
            self.client.lpush(queue_key(queue), payload)
        return jid