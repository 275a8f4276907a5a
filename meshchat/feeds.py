import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import redis
from flask import Response, current_app, stream_with_context

logger = logging.getLogger(__name__)

_CLOSED = object()


class Listener:
    def __init__(self, feed: "Feed", callback: Callable):
        self.feed = feed
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        if not self.cancelled:
            self.cancelled = True
            self.feed.remove_listener(self.callback)


class Feed:
    """Multi-consumer value holder that replays the latest value on subscribe.

    Queue consumers that fall behind lose their oldest pending value instead
    of blocking the publisher. Callback listeners run synchronously on the
    publishing thread.
    """

    def __init__(self, initial: Any = None, maxsize: int = 100, dedupe: bool = True, name: str = "feed"):
        self.name = name
        self.maxsize = maxsize
        self.dedupe = dedupe
        self._value = initial
        self.listeners: list[queue.Queue] = []
        self.callbacks: list[Callable] = []
        self.lock = threading.Lock()
        self.closed = False

    @property
    def value(self):
        return self._value

    def publish(self, value) -> bool:
        with self.lock:
            if self.closed:
                return False
            if self.dedupe and value == self._value:
                return False
            self._value = value
            listeners = list(self.listeners)
            callbacks = list(self.callbacks)
        for listener in listeners:
            _offer(listener, value)
        for callback in callbacks:
            try:
                callback(value)
            except Exception:
                logger.exception("Feed %s listener failed", self.name)
        return True

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self.lock:
            if self.closed:
                q.put_nowait(_CLOSED)
                return q
            q.put_nowait(self._value)
            self.listeners.append(q)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self.lock:
            if q in self.listeners:
                self.listeners.remove(q)

    def listen(self, callback: Callable, replay: bool = True) -> Listener:
        with self.lock:
            self.callbacks.append(callback)
            value = self._value
        if replay:
            callback(value)
        return Listener(self, callback)

    def remove_listener(self, callback: Callable):
        with self.lock:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

    def close(self):
        with self.lock:
            self.closed = True
            listeners = list(self.listeners)
            self.listeners.clear()
            self.callbacks.clear()
        for listener in listeners:
            _offer(listener, _CLOSED)


def _offer(q: queue.Queue, value):
    try:
        q.put_nowait(value)
    except queue.Full:
        try:
            q.get_nowait()
        except queue.Empty:
            pass
        try:
            q.put_nowait(value)
        except queue.Full:
            pass


def _change_event(collection: str, op: str, doc_ids: Iterable[str]) -> dict:
    return {
        "type": "change",
        "collection": collection,
        "op": op,
        "ids": list(doc_ids),
        "at": datetime.now(timezone.utc).isoformat(),
    }


class BaseChangeBus:
    def publish(self, collection: str, op: str, doc_ids: Iterable[str] = ()):  # pragma: no cover - interface
        raise NotImplementedError

    def stream(self):  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryChangeBus(BaseChangeBus):
    """Delivers store change events to in-process listeners and SSE queues."""

    def __init__(self, queue_size: int = 100, heartbeat: int = 10):
        self.queue_size = queue_size
        self.heartbeat = heartbeat
        self.callbacks: list[Callable[[dict], None]] = []
        self.listeners: list[queue.Queue] = []
        self.lock = threading.Lock()

    def publish(self, collection: str, op: str, doc_ids: Iterable[str] = ()):
        payload = _change_event(collection, op, doc_ids)
        with self.lock:
            listeners = list(self.listeners)
            callbacks = list(self.callbacks)
        for listener in listeners:
            try:
                listener.put_nowait(payload)
            except queue.Full:
                continue
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception("Change listener failed for collection %s", collection)
        return payload

    def add_listener(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        with self.lock:
            self.callbacks.append(callback)

        def remove():
            with self.lock:
                if callback in self.callbacks:
                    self.callbacks.remove(callback)

        return remove

    def subscribe(self):
        q: queue.Queue = queue.Queue(maxsize=self.queue_size)
        with self.lock:
            self.listeners.append(q)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self.lock:
            if q in self.listeners:
                self.listeners.remove(q)

    def stream(self):
        q = self.subscribe()

        def event_stream():
            heartbeat = time.time()
            try:
                while True:
                    try:
                        payload = q.get(timeout=1)
                        yield f"data: {json.dumps(payload)}\n\n"
                    except queue.Empty:
                        pass
                    if time.time() - heartbeat > self.heartbeat:
                        yield "data: {\"type\": \"ping\"}\n\n"
                        heartbeat = time.time()
            finally:
                self.unsubscribe(q)

        return event_stream()


class RedisChangeBus(InMemoryChangeBus):
    """Also fans change events out to other processes over redis pub/sub."""

    def __init__(self, url: str, queue_size: int = 100, heartbeat: int = 10, channel: str = "meshchat:changes"):
        super().__init__(queue_size=queue_size, heartbeat=heartbeat)
        self.redis = redis.Redis.from_url(url)
        self.channel = channel

    def publish(self, collection: str, op: str, doc_ids: Iterable[str] = ()):
        payload = super().publish(collection, op, doc_ids)
        try:
            self.redis.publish(self.channel, json.dumps(payload))
        except redis.RedisError:
            logger.warning("Could not publish change for %s to redis", collection, exc_info=True)
        return payload

    def stream(self):
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self.channel)

        def event_stream():
            heartbeat = time.time()
            try:
                while True:
                    msg = pubsub.get_message(timeout=1)
                    if msg and msg.get("type") == "message":
                        payload = msg.get("data", b"")
                        if isinstance(payload, bytes):
                            payload = payload.decode()
                        yield f"data: {payload}\n\n"
                    if time.time() - heartbeat > self.heartbeat:
                        yield "data: {\"type\": \"ping\"}\n\n"
                        heartbeat = time.time()
            finally:
                pubsub.close()

        return event_stream()


def create_change_bus(app) -> BaseChangeBus:
    url = app.config.get("REDIS_URL")
    queue_size = app.config.get("FEED_QUEUE_SIZE", 100)
    heartbeat = app.config.get("FEED_HEARTBEAT_SECONDS", 10)
    if url:
        app.logger.info("Using redis change bus at %s", url)
        return RedisChangeBus(url, queue_size=queue_size, heartbeat=heartbeat)
    return InMemoryChangeBus(queue_size=queue_size, heartbeat=heartbeat)


def get_change_bus():
    bus = current_app.extensions.get("change_bus")
    if not bus:
        bus = create_change_bus(current_app)
        current_app.extensions["change_bus"] = bus
    return bus


def feed_stream(feed: Feed, serialize: Callable[[Any], Any], heartbeat: int = 10, timeout: float = 1.0):
    """Render a feed as server-sent events; ends when the feed closes."""
    q = feed.subscribe()
    last_beat = time.time()
    try:
        while True:
            try:
                value = q.get(timeout=timeout)
            except queue.Empty:
                value = None
            else:
                if value is _CLOSED:
                    return
                yield f"data: {json.dumps(serialize(value))}\n\n"
            if time.time() - last_beat > heartbeat:
                yield "data: {\"type\": \"ping\"}\n\n"
                last_beat = time.time()
    finally:
        feed.unsubscribe(q)


def sse_stream(events: Iterable[str], on_close: Optional[Callable[[], None]] = None):
    response = Response(stream_with_context(events), mimetype="text/event-stream")
    if on_close is not None:
        response.call_on_close(on_close)
    return response
