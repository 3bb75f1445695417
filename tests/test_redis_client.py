import json

from jobrelay.redis_client import RedisStatusPublisher, RedisStatusRelay, RedisWakeupQueue

class FakeRedis:
    def __init__(self):
        self.lists = {}
        self.published = []

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def brpop(self, key, timeout=0):
        items = self.lists.get(key)
        if not items:
            return None
        return key, items.pop()

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

class Target:
    def __init__(self):
        self.events = []

    def publish(self, event_type, data):
        self.events.append((event_type, data))
        return 1

def test_wakeup_queue_is_fifo():
    r = FakeRedis()
    q = RedisWakeupQueue(r, "wakeups")
    q.push("a")
    q.push("b")
    assert q.pop() == "a"
    assert q.pop() == "b"
    assert q.pop() is None

def test_publisher_and_relay_round_trip():
    r = FakeRedis()
    RedisStatusPublisher(r, "status").publish("completed", {"id": "j1"})
    (channel, raw), = r.published
    assert channel == "status"

    target = Target()
    assert RedisStatusRelay(r, "status", target).handle(raw) is True
    assert target.events == [("completed", {"id": "j1"})]

def test_relay_drops_malformed():
    target = Target()
    relay = RedisStatusRelay(FakeRedis(), "status", target)
    assert relay.handle("not json") is False
    assert relay.handle(json.dumps({"data": {}})) is False
    assert target.events == []
