import pytest

from marathon.stage_status import StageStatus, StageStatusError


class FakeRedis:
    def __init__(self):
        self.hashes = {}

    def hset(self, name, key, value):
        self.hashes.setdefault(name, {})[key] = str(value)
        return 1

    def hincrby(self, name, key, amount=1):
        table = self.hashes.setdefault(name, {})
        value = int(table.get(key, "0")) + amount
        table[key] = str(value)
        return value

    def hgetall(self, name):
        return dict(self.hashes.get(name, {}))


@pytest.fixture
def redis_client():
    return FakeRedis()


def test_create(redis_client):
    ss = StageStatus(redis_client, "job1", "1", "first stage", 1)
    assert ss.stage_key == "job1-1"
    assert ss.completed is False


def test_cannot_create_with_zero_max(redis_client):
    with pytest.raises(StageStatusError) as info:
        StageStatus(redis_client, "job1", "1", "first stage", 0)
    assert str(info.value) == "can't create a stage with 0 maxProgress"
    assert redis_client.hgetall("job1") == {}


def test_reports_stage_progress(redis_client):
    ss = StageStatus(redis_client, "job1", "1", "first stage", 2)
    assert redis_client.hgetall("job1") == {"1": "job1-1"}
    stats = redis_client.hgetall("job1-1")
    assert stats["description"] == "first stage"
    assert stats["current"] == "0"
    assert stats["max"] == "2"

    ss.incr_progress()
    assert redis_client.hgetall("job1-1")["current"] == "1"
    ss.incr_progress()
    assert redis_client.hgetall("job1-1")["current"] == "2"
    assert ss.completed is True


def test_reports_inner_stages(redis_client):
    s1 = StageStatus(redis_client, "job1", "1", "stage 1", 2)
    StageStatus(redis_client, "job1", "2", "stage 2", 20)

    s1_1 = s1.new_sub_stage("stage 1.1", 3)
    assert len(s1.sub_stages) == 1
    s1_1_1 = s1_1.new_sub_stage("stage 1.1.1", 5)
    assert len(s1_1.sub_stages) == 1
    s1_1.new_sub_stage("stage 1.1.2", 7)
    assert len(s1_1.sub_stages) == 2
    s1.new_sub_stage("stage 1.2", 4)
    assert len(s1.sub_stages) == 2

    assert redis_client.hgetall("job1") == {
        "1": "job1-1",
        "2": "job1-2",
        "1.1": "job1-1.1",
        "1.1.1": "job1-1.1.1",
        "1.1.2": "job1-1.1.2",
        "1.2": "job1-1.2",
    }

    expected = {
        "job1-1": ("stage 1", "2"),
        "job1-2": ("stage 2", "20"),
        "job1-1.1": ("stage 1.1", "3"),
        "job1-1.1.1": ("stage 1.1.1", "5"),
        "job1-1.2": ("stage 1.2", "4"),
    }
    for key, (description, maximum) in expected.items():
        stats = redis_client.hgetall(key)
        assert stats["description"] == description
        assert stats["current"] == "0"
        assert stats["max"] == maximum

    s1.incr_progress()
    s1.incr_progress()
    assert redis_client.hgetall("job1-1")["current"] == "2"

    for _ in range(3):
        s1_1.incr_progress()
    assert redis_client.hgetall("job1-1.1")["current"] == "3"

    for _ in range(4):
        s1_1_1.incr_progress()
    assert redis_client.hgetall("job1-1.1.1")["current"] == "4"
    assert s1_1_1.completed is False

    assert redis_client.hgetall("job1-1.2")["current"] == "0"


def test_cannot_increase_beyond_max(redis_client):
    ss = StageStatus(redis_client, "job1", "1", "first stage", 1)
    stats = redis_client.hgetall("job1-1")
    assert stats["description"] == "first stage"
    assert stats["current"] == "0"
    assert stats["max"] == "1"

    ss.incr_progress()
    assert redis_client.hgetall("job1-1")["current"] == "1"

    with pytest.raises(StageStatusError) as info:
        ss.incr_progress()
    assert str(info.value) == "stage is already finished"
    assert redis_client.hgetall("job1-1")["current"] == "1"