import logging
import threading
from typing import Optional

from . import keys
from .errors import SubscriptionNotFound
from .schemas import Room
from .store import DocumentStore, SubscriptionHandle


class RoomSubscriptions:
    def __init__(self, messages: SubscriptionHandle, room: Optional[SubscriptionHandle] = None):
        self.messages = messages
        self.room = room

    def handles(self) -> list[SubscriptionHandle]:
        return [h for h in (self.room, self.messages) if h is not None]

    def cancel(self):
        for handle in self.handles():
            handle.cancel()


class SubscriptionManager:
    """Tracks which rooms and collections this client replicates."""

    def __init__(self, store: DocumentStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.rooms: dict[str, RoomSubscriptions] = {}
        self.collections: dict[str, SubscriptionHandle] = {}

    def add_subscriptions(self, room: Room) -> bool:
        with self.lock:
            if room.id in self.rooms:
                return False
            if room.is_private:
                messages = self.store.subscribe(room.messages_id)
                room_handle = self.store.subscribe(room.rooms_collection, {keys.DB_ID_KEY: room.id})
            else:
                messages = self.store.subscribe(room.messages_id, {keys.ROOM_ID_KEY: room.id})
                room_handle = None
            self.rooms[room.id] = RoomSubscriptions(messages, room_handle)
        self.logger.debug("Subscribed to room %s", room.id)
        return True

    def _remove(self, room_id: str):
        with self.lock:
            entry = self.rooms.pop(room_id, None)
            if entry is None:
                raise SubscriptionNotFound(room_id)
            entry.cancel()

    def remove_subscriptions(self, room: Room) -> bool:
        try:
            self._remove(room.id)
        except SubscriptionNotFound as exc:
            self.logger.warning("%s", exc)
            return False
        self.logger.debug("Unsubscribed from room %s", room.id)
        return True

    def subscribe_collection(self, name: str) -> SubscriptionHandle:
        with self.lock:
            handle = self.collections.get(name)
            if handle is None or handle.cancelled:
                handle = self.store.subscribe(name)
                self.collections[name] = handle
            return handle

    def has_subscriptions(self, room_id: str) -> bool:
        with self.lock:
            return room_id in self.rooms

    def handles(self, room_id: str) -> list[SubscriptionHandle]:
        with self.lock:
            entry = self.rooms.get(room_id)
            return entry.handles() if entry else []

    def room_ids(self) -> list[str]:
        with self.lock:
            return list(self.rooms)

    def logout_all(self):
        with self.lock:
            for entry in self.rooms.values():
                entry.cancel()
            for handle in self.collections.values():
                handle.cancel()
            self.rooms.clear()
            self.collections.clear()
