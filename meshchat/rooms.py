import logging
import threading
from typing import Iterable, Optional

from pydantic import ValidationError

from . import keys
from .feeds import Feed
from .local_store import LocalStore
from .schemas import Room
from .store import DocumentStore, LiveQuery
from .subscriptions import SubscriptionManager


def compute_visible_rooms(all_rooms: Iterable[Room], archived_ids: Iterable[str]) -> list[Room]:
    archived = set(archived_ids)
    visible = [room for room in all_rooms if room.id not in archived]
    visible.sort(key=lambda room: room.created_on, reverse=True)
    return visible


def decode_rooms(docs: Iterable[dict], logger: logging.Logger) -> list[Room]:
    rooms = []
    for doc in docs:
        try:
            rooms.append(Room.from_document(doc))
        except ValidationError:
            logger.warning("Skipping malformed room document %s", doc.get(keys.DB_ID_KEY))
    return rooms


class RoomRegistry:
    """Keeps the visible room lists and their subscriptions current."""

    def __init__(self, store: DocumentStore, local_store: LocalStore, subscriptions: SubscriptionManager,
                 logger: Optional[logging.Logger] = None, feed_size: int = 100):
        self.store = store
        self.local_store = local_store
        self.subscriptions = subscriptions
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.all_public_rooms: list[Room] = []
        self.public_rooms = Feed([], maxsize=feed_size, name="public_rooms")
        self.private_rooms = Feed([], maxsize=feed_size, name="private_rooms")
        self.archived_rooms = Feed([], maxsize=feed_size, name="archived_rooms")
        self._live_query: Optional[LiveQuery] = None
        self._listeners = []

    def start(self):
        with self.lock:
            if self._live_query is not None:
                return self
            self._listeners = [
                self.local_store.archived_rooms_feed.listen(self._on_local_change, replay=False),
                self.local_store.private_rooms_feed.listen(self._on_local_change, replay=False),
            ]
            self._live_query = self.store.observe(
                keys.PUBLIC_ROOMS_COLLECTION, self._on_public_rooms, sort=keys.CREATED_ON_KEY
            )
        return self

    def _on_public_rooms(self, docs: list[dict]):
        with self.lock:
            self.all_public_rooms = decode_rooms(docs, self.logger)
        self.refresh()

    def _on_local_change(self, _value):
        self.refresh()

    def reload(self):
        """Re-read the public rooms collection, then refresh."""
        docs = self.store.query(keys.PUBLIC_ROOMS_COLLECTION, sort=keys.CREATED_ON_KEY)
        self._on_public_rooms(docs)

    def refresh(self):
        with self.lock:
            archived_ids = self.local_store.archived_room_ids()
            public = compute_visible_rooms(self.all_public_rooms, archived_ids)
            private = compute_visible_rooms(self.local_store.private_rooms(), archived_ids)
            for room in public + private:
                self.subscriptions.add_subscriptions(room)
            archived = sorted(self.local_store.archived_rooms(), key=lambda room: room.created_on, reverse=True)
        self.public_rooms.publish(public)
        self.private_rooms.publish(private)
        self.archived_rooms.publish(archived)

    def find_public_room(self, room_id: str) -> Optional[Room]:
        with self.lock:
            for room in self.all_public_rooms:
                if room.id == room_id:
                    return room
        return None

    def stop(self):
        with self.lock:
            if self._live_query is not None:
                self._live_query.cancel()
                self._live_query = None
            for listener in self._listeners:
                listener.cancel()
            self._listeners = []

    def close(self):
        self.stop()
        self.public_rooms.close()
        self.private_rooms.close()
        self.archived_rooms.close()
