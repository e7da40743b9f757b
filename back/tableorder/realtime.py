import json
import logging

import redis

from .settings import settings

logger = logging.getLogger(__name__)


class RedisPublisher:
    """Publish order events to Redis for the station boards and customer screens.

    Channels:
    - orders:station:{station} - kitchen / bar / pastry boards
    - orders:table:{table_id}  - customers sitting at a table
    """

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or settings.redis_url
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis | None:
        if self._client is None:
            try:
                client = redis.from_url(self.redis_url)
                client.ping()
                self._client = client
            except redis.RedisError as e:
                logger.debug(f"Redis unavailable at {self.redis_url}: {e}")
                return None
        return self._client

    def publish(self, event: dict, *, station: str | None = None, table_id: int | None = None) -> bool:
        r = self._get_client()
        if r is None:
            return False
        payload = json.dumps(event, default=str)
        try:
            if station is not None:
                r.publish(f"orders:station:{station}", payload)
            if table_id is not None:
                r.publish(f"orders:table:{table_id}", payload)
            return True
        except redis.RedisError as e:
            # Fan-out is best effort; drop the client so the next call reconnects
            logger.warning(f"Failed to publish {event.get('type')}: {e}")
            self._client = None
            return False


def publish_event(publisher, event: dict, *, station: str | None = None, table_id: int | None = None) -> bool:
    """Publish through an optional publisher; services run without one in scripts and tests."""
    if publisher is None:
        return False
    return publisher.publish(event, station=station, table_id=table_id)
