import time
import uuid
from dataclasses import dataclass
from types import SimpleNamespace
from unittest import mock

import pytest

from marathon.jobs import Job, JobStore
from marathon.process_batch_worker import BatchProcessingError, ProcessBatchWorker
from marathon.queue import Message
from marathon.util import Template, User, compress_users
from marathon.worker import (
    PROCESS_BATCH_WORKER_COMPLETED,
    PROCESS_BATCH_WORKER_START,
    Config,
    Worker,
)


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}

    def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        self.expiry.pop(key, None)
        if ex is not None:
            self.expiry[key] = time.time() + ex
        return True

    def ttl(self, key):
        if key not in self.data:
            return -2
        if key not in self.expiry:
            return -1
        return int(round(self.expiry[key] - time.time()))

    def expire(self, key, seconds):
        if key not in self.data:
            return False
        self.expiry[key] = time.time() + seconds
        return True

    def rpush(self, key, *values):
        items = self.data.setdefault(key, [])
        items.extend(values)
        return len(items)

    def lpush(self, key, *values):
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    def _pop(self, key, index):
        items = self.data.get(key)
        if not items:
            return None
        value = items.pop(index)
        if not items:
            del self.data[key]
        return value

    def rpop(self, key):
        return self._pop(key, -1)

    def lpop(self, key):
        return self._pop(key, 0)

    def llen(self, key):
        return len(self.data.get(key, []))

    def sadd(self, key, *members):
        self.data.setdefault(key, set()).update(members)
        return len(members)

    def zadd(self, key, mapping):
        self.data.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zcard(self, key):
        return len(self.data.get(key, {}))

    def zrange(self, key, start, end):
        members = sorted(self.data.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, _ in members]

    def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def exists(self, *keys):
        return sum(1 for key in keys if key in self.data)


@dataclass
class SentPush:
    topic: str
    device_token: str
    payload: dict
    message_metadata: dict
    push_metadata: dict
    push_expiry: int
    template_name: str


class RecordingProducer:
    def __init__(self):
        self.apns = []
        self.gcm = []
        self.failing_tokens = set()

    def _record(self, target, *args):
        push = SentPush(*args)
        if push.device_token in self.failing_tokens:
            raise ConnectionError("delivery failed")
        target.append(push)

    def send_apns_push(self, *args):
        self._record(self.apns, *args)

    def send_gcm_push(self, *args):
        self._record(self.gcm, *args)


class RecordingStats:
    def __init__(self):
        self.counters = []

    def incr(self, name, tags=(), rate=1.0):
        self.counters.append(name)

    def timing(self, name, seconds, tags=(), rate=1.0):
        self.counters.append(name)


CONFIG = {
    "workers": {
        "topicTemplate": "push-%s_%s",
        "processBatch": {
            "maxBatchFailure": 0.05,
            "maxUserFailureInBatch": 0.05,
            "intervalToSendCompletedJob": "10m",
        },
        "jobCompleted": {"maxRetries": 3},
    }
}


def make_users(count=2, locale="en"):
    return [
        User(user_id=str(uuid.uuid4()), token=uuid.uuid4().hex, locale=locale)
        for _ in range(count)
    ]


def batch_message(job_id, users, app_name="testapp"):
    return Message({"args": [str(job_id), app_name, compress_users(users)]})


@pytest.fixture
def env():
    redis = FakeRedis()
    store = JobStore()
    producer = RecordingProducer()
    stats = RecordingStats()
    worker = Worker(Config(CONFIG), redis, store, push_producer=producer, stats=stats)
    app_id = uuid.uuid4()
    defaults = {"user_name": "Someone", "object_name": "village"}
    store.add_template(
        app_id,
        Template(
            body={"alert": "{{user_name}} just liked your {{object_name}}!"},
            defaults=defaults,
            name="village-like",
            locale="en",
        ),
    )
    store.add_template(
        app_id,
        Template(
            body={"alert": "{{user_name}} just disliked your {{object_name}}!"},
            defaults=defaults,
            name="village-dislike",
            locale="en",
        ),
    )
    store.add_template(
        app_id,
        Template(
            body={"alert": "{{user_name}} curtiram sua {{object_name}}!"},
            defaults={"user_name": "Alguém", "object_name": "vila"},
            name="village-like",
            locale="pt",
        ),
    )
    store.add_template(
        app_id,
        Template(
            body={"alert": "{{user_name}} a aimé ta {{object_name}}!"},
            defaults={"user_name": "Quelqu'un", "object_name": "ville"},
            name="village-like",
            locale="fr",
        ),
    )

    def new_job(template_name="village-like", **overrides):
        fields = dict(
            app_id=app_id,
            app_name="testapp",
            template_name=template_name,
            context={"user_name": "Everyone"},
            metadata={"meta": uuid.uuid4().hex},
            expires_at=time.time() + 3600,
        )
        fields.update(overrides)
        return store.add_job(Job(**fields))

    return SimpleNamespace(
        redis=redis,
        store=store,
        producer=producer,
        stats=stats,
        worker=worker,
        batch=ProcessBatchWorker(worker),
        new_job=new_job,
        job=new_job(),
        many=new_job("village-like,village-dislike"),
        gcm_job=new_job(service="gcm"),
    )


def test_gcm_job_sends_rendered_pushes(env):
    users = make_users()
    env.batch.process(batch_message(env.gcm_job.id, users))
    assert len(env.producer.gcm) == 2
    assert env.producer.apns == []
    for user, push in zip(users, env.producer.gcm):
        assert push.device_token == user.token
        assert push.push_expiry == int(env.gcm_job.expires_at)
        assert push.payload["alert"] == "Everyone just liked your village!"
        assert push.message_metadata["meta"] == env.gcm_job.metadata["meta"]
        assert "dryRun" not in push.push_metadata
        assert push.topic == "push-testapp_gcm"


def test_apns_job_sends_rendered_pushes(env):
    users = make_users()
    env.batch.process(batch_message(env.job.id, users))
    assert len(env.producer.apns) == 2
    for user, push in zip(users, env.producer.apns):
        assert push.device_token == user.token
        assert push.push_expiry == int(env.job.expires_at)
        assert push.payload["alert"] == "Everyone just liked your village!"
        assert push.message_metadata["meta"] == env.job.metadata["meta"]
        assert push.topic == "push-testapp_apns"
    assert env.stats.counters == [PROCESS_BATCH_WORKER_START, PROCESS_BATCH_WORKER_COMPLETED]


def test_random_template_chosen_among_many(env):
    users = make_users()
    env.batch.process(batch_message(env.many.id, users))
    assert len(env.producer.apns) == 2
    for user, push in zip(users, env.producer.apns):
        assert push.device_token == user.token
        assert push.payload["alert"] in {
            "Everyone just liked your village!",
            "Everyone just disliked your village!",
        }
        assert push.template_name in {"village-like", "village-dislike"}
        assert push.push_metadata["templateName"] == push.template_name


def test_last_batch_sets_completed_at_and_schedules_completion(env):
    env.store.update_job(env.job.id, completed_batches=0, total_batches=1)
    env.batch.process(batch_message(env.job.id, make_users()))
    stored = env.store.get_job(env.job.id)
    assert stored.completed_batches == 1
    assert abs(stored.completed_at - time.time()) < 5
    assert env.redis.zcard("schedule") == 1
    scheduled = Message.from_json(env.redis.zrange("schedule", 0, -1)[0])
    assert scheduled.queue == "job_completed_worker"
    assert scheduled.args == [str(env.job.id)]
    assert abs(scheduled.at - (time.time() + 600)) < 5
    levels = [level for level, _, _ in env.store.events(env.job.id)]
    assert levels == ["running", "success"]


@pytest.mark.parametrize("total_batches", [2, 0])
def test_not_last_batch_does_not_complete(env, total_batches):
    env.store.update_job(env.job.id, completed_batches=0, total_batches=total_batches)
    env.batch.process(batch_message(env.job.id, make_users()))
    stored = env.store.get_job(env.job.id)
    assert stored.completed_batches == 1
    assert stored.completed_at == 0
    assert env.redis.zcard("schedule") == 0


def test_increments_completed_tokens(env):
    users = make_users()
    env.batch.process(batch_message(env.gcm_job.id, users))
    assert env.store.get_job(env.gcm_job.id).completed_tokens == len(users)


def test_expired_job_is_not_processed(env):
    env.store.update_job(env.job.id, expires_at=time.time() - 1)
    env.batch.process(batch_message(env.job.id, make_users()))
    stored = env.store.get_job(env.job.id)
    assert (stored.completed_batches, stored.completed_tokens) == (0, 0)
    assert env.producer.apns == []


def test_stopped_job_is_not_processed(env):
    env.store.update_job(env.job.id, status="stopped")
    env.batch.process(batch_message(env.job.id, make_users()))
    stored = env.store.get_job(env.job.id)
    assert (stored.completed_batches, stored.completed_tokens) == (0, 0)
    assert env.producer.apns == []


def test_uses_template_of_user_locale(env):
    users = make_users(locale="PT")
    env.batch.process(batch_message(env.job.id, users))
    assert [push.device_token for push in env.producer.apns] == [u.token for u in users]
    assert {push.payload["alert"] for push in env.producer.apns} == {
        "Everyone curtiram sua vila!"
    }


@pytest.mark.parametrize("service", ["apns", "gcm"])
def test_push_metadata(env, service):
    job = env.job if service == "apns" else env.gcm_job
    user = make_users(1, locale="pt")[0]
    env.batch.process(batch_message(job.id, [user]))
    push = getattr(env.producer, service)[0]
    assert push.push_metadata["jobId"] == str(job.id)
    assert push.push_metadata["userId"] == user.user_id
    assert push.push_metadata["templateName"] == "village-like"
    assert push.push_metadata["pushType"] == "massive"
    assert uuid.UUID(push.push_metadata["muid"]).version == 4


def test_failed_batch_is_counted(env):
    env.store.remove_templates()
    env.store.update_job(env.job.id, total_batches=100)
    with pytest.raises(BatchProcessingError):
        env.batch.process(batch_message(env.job.id, make_users()))
    key = f"{env.job.id}-failedbatches"
    assert env.redis.get(key) == "1"
    assert abs(env.redis.ttl(key) - 7 * 24 * 3600) <= 2
    stored = env.store.get_job(env.job.id)
    assert stored.completed_batches == 0
    assert stored.status == ""


def test_failed_batches_trip_circuit_breaker(env):
    env.store.remove_templates()
    key = f"{env.job.id}-failedbatches"
    env.redis.set(key, 4, ex=3600)
    env.store.update_job(env.job.id, total_batches=100)
    with pytest.raises(BatchProcessingError):
        env.batch.process(batch_message(env.job.id, make_users()))
    assert env.redis.get(key) == "5"
    assert abs(env.redis.ttl(key) - 3600) <= 2
    stored = env.store.get_job(env.job.id)
    assert stored.completed_batches == 0
    assert stored.status == "circuitbreak"
    breaker = f"{env.job.id}-circuitbreak"
    assert env.redis.get(breaker) == "1"
    assert abs(env.redis.ttl(breaker) - 60) <= 2


@mock.patch("random.randrange", return_value=30)
def test_reschedules_when_job_missing(_randrange, env):
    env.store.remove_job(env.job.id)
    with pytest.raises(BatchProcessingError):
        env.batch.process(batch_message(env.job.id, make_users()))
    assert env.redis.zcard("schedule") == 1
    scheduled = Message.from_json(env.redis.zrange("schedule", 0, -1)[0])
    assert scheduled.queue == "process_batch_worker"
    assert time.time() < scheduled.at < time.time() + 100


@mock.patch("random.randrange", return_value=30)
def test_reschedules_when_templates_missing(_randrange, env):
    env.store.remove_templates()
    env.store.update_job(env.job.id, total_batches=100)
    users = make_users()
    with pytest.raises(BatchProcessingError):
        env.batch.process(batch_message(env.job.id, users))
    assert env.redis.zcard("schedule") == 1
    scheduled = Message.from_json(env.redis.zrange("schedule", 0, -1)[0])
    assert scheduled.queue == "process_batch_worker"
    assert scheduled.args[0] == str(env.job.id)
    assert time.time() < scheduled.at < time.time() + 100


@pytest.mark.parametrize("status", ["paused", "circuitbreak"])
def test_paused_job_moves_batch_to_paused_list(env, status):
    env.store.update_job(env.job.id, status=status)
    message = batch_message(env.job.id, make_users())
    env.batch.process(message)
    stored = env.store.get_job(env.job.id)
    assert (stored.completed_batches, stored.completed_tokens) == (0, 0)
    assert env.redis.lpop(f"{env.job.id}-pausedjobs") == message.to_json()


@pytest.mark.parametrize("service", ["apns", "gcm"])
def test_dry_run_flag_is_put_in_push_metadata(env, service):
    job = env.new_job(service=service, metadata={"dryRun": True})
    user = make_users(1, locale="pt")[0]
    env.batch.process(batch_message(job.id, [user]))
    push = getattr(env.producer, service)[0]
    assert push.push_metadata["dryRun"] is True
    assert push.push_metadata["jobId"] == str(job.id)
    assert push.message_metadata == {"dryRun": True}


def test_unknown_service_is_rejected(env):
    job = env.new_job(service="sms")
    with pytest.raises(ValueError, match="service should be in"):
        env.batch.process(batch_message(job.id, make_users()))


def test_too_many_delivery_failures_fail_the_batch(env):
    users = make_users()
    env.producer.failing_tokens = {user.token for user in users}
    env.store.update_job(env.job.id, total_batches=100)
    with pytest.raises(BatchProcessingError, match="several users"):
        env.batch.process(batch_message(env.job.id, users))
    stored = env.store.get_job(env.job.id)
    assert stored.completed_batches == 1
    assert stored.completed_tokens == 0
    assert env.redis.get(f"{env.job.id}-failedbatches") == "1"


def test_invalid_message_is_rejected(env):
    with pytest.raises(BatchProcessingError, match="array must be of the form"):
        env.batch.process(Message({"args": [str(env.job.id), "testapp"]}))