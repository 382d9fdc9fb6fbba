import pytest
import redis

from imrelay.logic.config import KafkaConfig, LogicConfig, RedisConfig
from imrelay.logic.dao import (
    Dao,
    PushMsg,
    PushType,
    key_key_server,
    key_mid_server,
    key_server_online,
    room_slot,
)
from imrelay.logic.model import Online

TOPIC = "goim-push-topic"


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.ttl = {}
        self.closed = False

    @staticmethod
    def _b(value):
        return value if isinstance(value, bytes) else str(value).encode()

    def _exists(self, name):
        return name in self.values or name in self.hashes

    def set(self, name, value):
        self.values[name] = self._b(value)
        return True

    def expire(self, name, time):
        if not self._exists(name):
            return False
        self.ttl[name] = time
        return True

    def hset(self, name, key, value):
        table = self.hashes.setdefault(name, {})
        new = key not in table
        table[key] = self._b(value)
        return int(new)

    def hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    def hgetall(self, name):
        return {self._b(k): v for k, v in self.hashes.get(name, {}).items()}

    def hdel(self, name, *keys):
        table = self.hashes.get(name, {})
        count = sum(1 for key in keys if table.pop(key, None) is not None)
        if name in self.hashes and not table:
            del self.hashes[name]
        return count

    def delete(self, *names):
        count = 0
        for name in names:
            if self.values.pop(name, None) is not None or self.hashes.pop(name, None) is not None:
                count += 1
        return count

    def mget(self, names):
        return [self.values.get(name) for name in names]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def close(self):
        self.closed = True


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def record(*args):
            self.calls.append((name, args))
            return self

        return record

    def execute(self, raise_on_error=True):
        return [getattr(self.client, name)(*args) for name, args in self.calls]


class FakeProducer:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def send(self, topic, key, value):
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.sent.append((topic, key, value))


def make_config():
    config = LogicConfig()
    config.redis = RedisConfig(network="tcp", addr="127.0.0.1:6379", expire=3600.0)
    config.kafka = KafkaConfig(topic=TOPIC, brokers=["127.0.0.1:9092"])
    return config


@pytest.fixture
def store():
    return FakeRedis()


@pytest.fixture
def producer():
    return FakeProducer()


@pytest.fixture
def dao(store, producer):
    return Dao(make_config(), store, producer)


def test_key_helpers():
    assert key_mid_server(1) == "mid_1"
    assert key_key_server("abc") == "key_abc"
    assert key_server_online("srv") == "ol_srv"


def test_room_slot_is_stable_and_in_range():
    for room in ["room", "test://1", "", "x" * 100]:
        slot = room_slot(room)
        assert 0 <= slot < 64
        assert slot == room_slot(room)


def test_push_msg_round_trip():
    message = PushMsg(type=PushType.ROOM, operation=100, room="test://1", msg=b"\x00hello")
    assert PushMsg.decode(message.encode()) == message


def test_push_msg_decode_rejects_garbage():
    with pytest.raises(ValueError):
        PushMsg.decode(b"not json")
    with pytest.raises(ValueError):
        PushMsg.decode(b'{"type": 9}')


def test_ping_close_lifecycle(store, producer):
    d = Dao(make_config(), store, producer)
    d.ping()
    assert store.values["PING"] == b"PONG"
    d.close()
    assert store.closed is True
    with pytest.raises(redis.exceptions.ConnectionError):
        d.ping()


def test_mapping_flow(dao, store):
    mid, key, server = 1, "test_key", "test_server"
    dao.add_mapping(0, "test", server)
    dao.add_mapping(mid, key, server)
    assert store.ttl[key_key_server(key)] == 3600
    assert store.ttl[key_mid_server(mid)] == 3600

    assert dao.expire_mapping(0, "test") is True
    assert dao.expire_mapping(mid, key) is True

    assert dao.servers_by_keys([key]) == [server]

    mapping, mids = dao.keys_by_mids([mid])
    assert mapping[key] == server
    assert mids == [mid]

    assert dao.del_mapping(0, "test", server) is True
    assert dao.del_mapping(mid, key, server) is True
    assert dao.servers_by_keys([key]) == [""]


def test_expire_and_delete_missing_mapping(dao):
    assert dao.expire_mapping(5, "missing") is False
    assert dao.del_mapping(5, "missing", "srv") is False


def test_servers_by_keys_requires_keys(dao):
    with pytest.raises(ValueError):
        dao.servers_by_keys([])


def test_keys_by_mids_merges_members(dao):
    dao.add_mapping(1, "a", "s1")
    dao.add_mapping(1, "b", "s2")
    dao.add_mapping(2, "c", "s1")
    mapping, mids = dao.keys_by_mids([1, 2, 3])
    assert mapping == {"a": "s1", "b": "s2", "c": "s1"}
    assert mids == [1, 2]


def test_server_online_round_trip(dao, store):
    online = Online(room_count={"room": 10})
    dao.add_server_online("test_server", online)
    result = dao.server_online("test_server")
    assert result.room_count["room"] == 10
    dao.del_server_online("test_server")
    assert key_server_online("test_server") not in store.hashes
    assert dao.server_online("test_server").room_count == {}


def test_server_online_merges_slots(dao, store):
    rooms = {f"test://room_{i}": i + 1 for i in range(20)}
    dao.add_server_online("srv", Online(server="srv", room_count=rooms, updated=50))
    name = key_server_online("srv")
    free = next(str(i) for i in range(64) if str(i) not in store.hashes[name])
    store.hset(name, free, Online(server="srv", room_count={"late": 3}, updated=90).to_json())
    result = dao.server_online("srv")
    assert result.server == "srv"
    assert result.updated == 90
    assert result.room_count == {**rooms, "late": 3}


def test_server_online_skips_unreadable_slot(dao, store):
    dao.add_server_online("srv", Online(server="srv", room_count={"room": 4}, updated=7))
    name = key_server_online("srv")
    free = next(str(i) for i in range(64) if str(i) not in store.hashes[name])
    store.hset(name, free, "{broken")
    result = dao.server_online("srv")
    assert result.room_count == {"room": 4}
    assert result.updated == 7


def test_push_msg(dao, producer):
    dao.push_msg(100, "test", ["key"], b"msg")
    topic, key, value = producer.sent[0]
    assert topic == TOPIC
    assert key == b"key"
    assert PushMsg.decode(value) == PushMsg(
        type=PushType.PUSH, operation=100, server="test", keys=["key"], msg=b"msg"
    )


def test_push_msg_requires_keys(dao):
    with pytest.raises(ValueError):
        dao.push_msg(100, "test", [], b"msg")


def test_broadcast_room_msg(dao, producer):
    dao.broadcast_room_msg(100, "test://1", b"msg")
    topic, key, value = producer.sent[0]
    assert (topic, key) == (TOPIC, b"test://1")
    decoded = PushMsg.decode(value)
    assert decoded.type is PushType.ROOM
    assert decoded.room == "test://1"
    assert decoded.msg == b"msg"


def test_broadcast_msg(dao, producer):
    dao.broadcast_msg(100, 0, b"")
    topic, key, value = producer.sent[0]
    assert key == b"100"
    decoded = PushMsg.decode(value)
    assert decoded.type is PushType.BROADCAST
    assert decoded.speed == 0
    assert decoded.msg == b""


def test_producer_failure_propagates(store):
    d = Dao(make_config(), store, FakeProducer(fail=True))
    with pytest.raises(RuntimeError):
        d.broadcast_msg(1, 0, b"x")


def test_from_config_builds_pool(producer):
    d = Dao.from_config(make_config(), producer)
    kwargs = d.client.connection_pool.connection_kwargs
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 6379
    assert d.redis_expire == 3600
    assert d.topic == TOPIC


def test_from_config_requires_redis(producer):
    config = make_config()
    config.redis = None
    with pytest.raises(ValueError):
        Dao.from_config(config, producer)