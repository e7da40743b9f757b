import json

import pytest
import redis

from tableorder import realtime
from tableorder.realtime import RedisPublisher, publish_event


class FakeRedis:
    def __init__(self, fail_ping=False, fail_publish=False):
        self.fail_ping = fail_ping
        self.fail_publish = fail_publish
        self.published = []

    def ping(self):
        if self.fail_ping:
            raise redis.ConnectionError("connection refused")
        return True

    def publish(self, channel, payload):
        if self.fail_publish:
            raise redis.ConnectionError("connection reset")
        self.published.append((channel, json.loads(payload)))
        return 1


@pytest.fixture
def fake_redis(monkeypatch):
    clients = []

    def from_url(url):
        client = clients[0] if clients else FakeRedis()
        clients[:] = [client]
        return client

    monkeypatch.setattr(realtime.redis, "from_url", from_url)
    return clients


def test_publish_to_station_and_table(fake_redis):
    publisher = RedisPublisher("redis://test:6379")
    assert publisher.publish({"type": "order_paid", "order_id": 1}, station="kitchen", table_id=4) is True

    channels = [channel for channel, _ in fake_redis[0].published]
    assert channels == ["orders:station:kitchen", "orders:table:4"]
    assert fake_redis[0].published[0][1]["type"] == "order_paid"


def test_publish_without_redis(fake_redis):
    fake_redis.append(FakeRedis(fail_ping=True))
    assert RedisPublisher("redis://test:6379").publish({"type": "order_paid"}, station="bar") is False


def test_publish_failure_drops_client(fake_redis):
    fake_redis.append(FakeRedis(fail_publish=True))
    publisher = RedisPublisher("redis://test:6379")
    assert publisher.publish({"type": "order_paid"}, station="bar") is False
    assert publisher._client is None


def test_publish_event_without_publisher():
    assert publish_event(None, {"type": "order_paid"}, station="bar") is False
