"""Helpers shared by the push workers: users, filters, templates and batch messages."""

from __future__ import annotations

import base64
import binascii
import json
import random
import re
import string
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

STOPPED_JOB_STATUS = "stopped"

INVALID_MESSAGE_ARRAY = "array must be of the form [jobId, appName, users]"

_FORBIDDEN_USER_ID_CHARS = ('"', ",", "'")
_TZ_OFFSET_RE = re.compile(r"([\+|\-])(\d{2}).*(\d{2})")
_B64_ALPHABET = frozenset(string.ascii_letters + string.digits + "+/")
_USER_FIELDS = ("user_id", "token", "locale", "region", "tz")


class MessageError(ValueError):
    """Raised when a batch worker message cannot be parsed."""


@dataclass
class User:
    """A push recipient as carried inside batch messages."""

    user_id: str = ""
    token: str = ""
    locale: str = ""
    region: str = ""
    tz: str = ""

    def to_dict(self) -> dict[str, str]:
        """Return the JSON form, leaving out empty fields."""
        return {name: getattr(self, name) for name in _USER_FIELDS if getattr(self, name)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "User":
        """Build a user from its JSON form; unknown keys are ignored."""
        if not isinstance(data, Mapping):
            raise TypeError(f"cannot build a user from {type(data).__name__}")
        values: dict[str, str] = {}
        for name in _USER_FIELDS:
            value = data.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise TypeError(f"user field {name!r} must be a string, got {type(value).__name__}")
            values[name] = value
        return cls(**values)


@dataclass
class Template:
    """A push template: a JSON body with placeholders and their default values."""

    body: dict[str, Any] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    locale: str = ""


@dataclass
class BatchWorkerMessage:
    """A parsed process-batch message."""

    job_id: uuid.UUID
    app_name: str
    users: list[User]


def is_user_id_valid(user_id: str) -> bool:
    """Tell whether a user id is free of quotes and commas."""
    return not any(char in user_id for char in _FORBIDDEN_USER_ID_CHARS)


def get_time_offset_from_utc_in_seconds(tz: str) -> int:
    """Return the seconds to add to local time to reach UTC for a zone like '-03:00'."""
    match = _TZ_OFFSET_RE.search(tz)
    if match is None:
        return 0
    sign, hours, minutes = match.groups()
    offset = (int(hours) * 60 + int(minutes)) * 60
    return -offset if sign == "+" else offset


def get_where_clause_from_filters(filters: Mapping[str, Any]) -> str:
    """Build an SQL where clause from a mapping of column filters."""
    clauses = []
    for key, value in filters.items():
        operator, connector = "=", " OR "
        if "NOT" in key:
            key = key.strip("NOT")
            operator, connector = "!=", " AND "
        if not isinstance(value, str):
            raise TypeError(f"filter {key!r} must be a string, got {type(value).__name__}")
        if "," in value:
            parts = (f"\"{key}\"{operator}'{part}'" for part in value.split(","))
            clauses.append(f"({connector.join(parts)})")
        else:
            clauses.append(f"\"{key}\"{operator}'{value}'")
    return " AND ".join(clauses)


def get_push_db_table_name(app_name: str, service: str) -> str:
    """Return the push database table for an app and service."""
    return f"{app_name}_{service}"


def build_topic_name(app_name: str, service: str, topic_template: str) -> str:
    """Fill a '%s' style topic template with the app name and service."""
    return topic_template % (app_name, service)


def _go_json(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    return (
        text.replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def compress_users(users: Iterable[User]) -> str:
    """Serialise users to JSON, deflate with zlib and encode as base64."""
    payload = json.dumps(
        [user.to_dict() for user in users], ensure_ascii=False, separators=(",", ":")
    ).encode("utf-8")
    return base64.b64encode(zlib.compress(payload)).decode("ascii")


def _decode_base64(text: str) -> bytes:
    for index, char in enumerate(text):
        if char in "\r\n":
            continue
        if char == "=":
            break
        if char not in _B64_ALPHABET:
            raise MessageError(f"illegal base64 data at input byte {index}")
    cleaned = text.replace("\r", "").replace("\n", "")
    try:
        return base64.b64decode(cleaned, validate=True)
    except binascii.Error:
        pad = cleaned.find("=")
        index = pad if pad >= 0 else len(cleaned) - len(cleaned) % 4
        raise MessageError(f"illegal base64 data at input byte {index}") from None


def _parse_uuid(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(text)
    except ValueError:
        if len(text) not in (32, 36, 38, 45):
            raise MessageError(f"uuid: incorrect UUID length: {text}") from None
        raise MessageError(f"uuid: incorrect UUID format {text}") from None


def parse_process_batch_worker_message_array(arr: Sequence[Any]) -> BatchWorkerMessage:
    """Parse [jobId, appName, compressedUsers] into a BatchWorkerMessage."""
    if len(arr) != 3:
        raise MessageError(INVALID_MESSAGE_ARRAY)
    job_id_text, app_name, compressed = arr
    for name, value in (("job id", job_id_text), ("app name", app_name), ("users", compressed)):
        if not isinstance(value, str):
            raise TypeError(f"{name} must be a string, got {type(value).__name__}")

    job_id = _parse_uuid(job_id_text)
    raw = _decode_base64(compressed)
    try:
        users_bytes = zlib.decompress(raw)
    except zlib.error as exc:
        raise MessageError(f"zlib: {exc}") from None
    try:
        decoded = json.loads(users_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MessageError(str(exc)) from None
    if decoded is None:
        decoded = []
    if not isinstance(decoded, list):
        raise MessageError("users must be a JSON array")
    try:
        users = [User.from_dict(item) for item in decoded]
    except TypeError as exc:
        raise MessageError(str(exc)) from None
    if not users:
        raise MessageError("there must be at least one user")
    return BatchWorkerMessage(job_id=job_id, app_name=app_name, users=users)


def _execute_template(text: str, substitutions: Mapping[str, Any]) -> str:
    out = []
    pos = 0
    while True:
        start = text.find("{{", pos)
        if start < 0:
            out.append(text[pos:])
            return "".join(out)
        out.append(text[pos:start])
        end = text.find("}}", start + 2)
        if end < 0:
            raise ValueError(f"cannot find end tag '}}}}' for tag starting at {start}")
        tag = text[start + 2 : end]
        value = substitutions.get(tag)
        if isinstance(value, bytes):
            out.append(value.decode("utf-8"))
        elif isinstance(value, str):
            out.append(value)
        elif value is not None:
            raise TypeError(
                f"tag {tag!r} has unexpected value type {type(value).__name__}; "
                "expected str or bytes"
            )
        pos = end + 2


def build_message_from_template(template: Template, context: Mapping[str, Any]) -> str:
    """Render a template body as JSON, replacing {{tags}} from defaults then context."""
    body = _go_json(template.body)
    substitutions = {**template.defaults, **context}
    return _execute_template(body, substitutions)


def random_element_from_slice(elements: Sequence[str]) -> str:
    """Pick one element at random."""
    return random.choice(elements)