"""Realtime channel for the UI feed.

Topics used by the core:
  incidents              incident:new
  geofence:zones         zone:created, zone:dissolved
  geofence:user:<id>     zone:entered, zone:exited, zone:approaching

RedisStreamBroadcaster appends every event to a capped Redis stream per topic,
so events published by the Celery worker reach the API processes.
InMemoryBroadcaster keeps everything inside one process and is used in tests.
"""
import json
import logging
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import redis

from .config import settings
from ..models.orm import utcnow

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, str, Dict[str, Any]], None]
Event = Dict[str, Any]


class Broadcaster:
    """publish() never raises: a lost live event must not fail the write that caused it."""

    name = "base"

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def read(self, topic: str, after: str = "0", count: int = 100) -> List[Event]:
        """Events on `topic` newer than the id `after`, oldest first."""
        raise NotImplementedError


class RedisStreamBroadcaster(Broadcaster):
    name = "redis"

    STREAM_PREFIX = "hotspot:stream:"

    def __init__(self, url: Optional[str] = None, maxlen: Optional[int] = None,
                 client: Optional[redis.Redis] = None):
        self.url = url or settings.REDIS_URL
        self.maxlen = maxlen or settings.BROADCAST_STREAM_MAXLEN
        self._redis = client

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.url, decode_responses=True)
        return self._redis

    def stream_name(self, topic: str) -> str:
        return f"{self.STREAM_PREFIX}{topic}"

    def publish(self, topic, event, payload):
        try:
            entry_id = self._get_redis().xadd(
                self.stream_name(topic),
                {
                    "event": event,
                    "timestamp": utcnow().isoformat(),
                    "payload": json.dumps(payload, default=str),
                },
                maxlen=self.maxlen,
                approximate=True,
            )
        except redis.exceptions.RedisError as e:
            logger.error("Error publishing %s to %s: %s", event, topic, e)
            return None
        logger.debug("Published %s to %s as %s", event, topic, entry_id)
        return entry_id

    def read(self, topic, after="0", count=100):
        response = self._get_redis().xread({self.stream_name(topic): after}, count=count)
        events = []
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                events.append({
                    "id": entry_id,
                    "topic": topic,
                    "event": fields.get("event"),
                    "timestamp": fields.get("timestamp"),
                    "payload": json.loads(fields.get("payload") or "{}"),
                })
        return events


class InMemoryBroadcaster(Broadcaster):
    """Process-local channel with callback subscribers and a short history per topic."""

    name = "memory"

    def __init__(self, history: int = 1000):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._history: Dict[str, Deque[Tuple[int, Event]]] = defaultdict(lambda: deque(maxlen=history))
        self._seq = 0
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers[topic].append(callback)

    def unsubscribe(self, topic: str, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers.get(topic, []):
                self._subscribers[topic].remove(callback)

    def publish(self, topic, event, payload):
        with self._lock:
            self._seq += 1
            entry_id = str(self._seq)
            self._history[topic].append((self._seq, {
                "id": entry_id,
                "topic": topic,
                "event": event,
                "timestamp": utcnow().isoformat(),
                "payload": payload,
            }))
            subscribers = list(self._subscribers.get(topic, []))
        logger.debug("publish %s %s to %d subscriber(s)", topic, event, len(subscribers))
        for callback in subscribers:
            try:
                callback(topic, event, payload)
            except Exception:
                logger.exception("Subscriber failed for %s %s", topic, event)
        return entry_id

    def read(self, topic, after="0", count=100):
        after_seq = int(after) if str(after).isdigit() else 0
        with self._lock:
            events = [e for seq, e in self._history.get(topic, ()) if seq > after_seq]
        return events[:count]


_BROADCASTERS = {
    RedisStreamBroadcaster.name: RedisStreamBroadcaster,
    InMemoryBroadcaster.name: InMemoryBroadcaster,
}

_broadcaster: Optional[Broadcaster] = None


def get_broadcaster() -> Broadcaster:
    """Get or create the process-wide broadcaster selected by BROADCAST_BACKEND."""
    global _broadcaster
    if _broadcaster is None:
        backend = settings.BROADCAST_BACKEND.lower()
        try:
            _broadcaster = _BROADCASTERS[backend]()
        except KeyError:
            raise ValueError(f"Unknown broadcast backend: {backend}") from None
    return _broadcaster


def set_broadcaster(broadcaster: Optional[Broadcaster]) -> None:
    global _broadcaster
    _broadcaster = broadcaster
