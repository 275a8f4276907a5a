"""
Room archive, unarchive and delete.

Archiving is local to this device: the room's subscriptions are cancelled,
its replicated data is evicted and a snapshot is kept in local storage so
the room can be listed and brought back later. Deleting tombstones the room
and its messages so the removal replicates to other peers.
"""
import logging
import threading
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from . import keys
from .extensions import db
from .local_store import LocalStore
from .rooms import RoomRegistry
from .schemas import Room
from .store import DocumentStore
from .subscriptions import SubscriptionManager


class RoomState(str, Enum):
    ACTIVE = "active"
    ARCHIVING = "archiving"
    ARCHIVED = "archived"
    UNARCHIVING = "unarchiving"
    DELETED = "deleted"


class ArchiveCoordinator:
    def __init__(self, store: DocumentStore, local_store: LocalStore, subscriptions: SubscriptionManager,
                 registry: RoomRegistry, logger: Optional[logging.Logger] = None):
        self.store = store
        self.local_store = local_store
        self.subscriptions = subscriptions
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.states: dict[str, RoomState] = {}

    def state(self, room_id: str) -> RoomState:
        with self.lock:
            if room_id in self.states:
                return self.states[room_id]
        if self.local_store.is_archived(room_id):
            return RoomState.ARCHIVED
        return RoomState.ACTIVE

    def forget(self, room_id: str):
        """Drop tracked state, e.g. when a deleted room id is created again."""
        with self.lock:
            self.states.pop(room_id, None)

    def _evict(self, room: Room):
        if room.is_private:
            self.store.evict(room.messages_id)
            self.store.evict(room.rooms_collection, {keys.DB_ID_KEY: room.id})
        else:
            self.store.evict(room.messages_id, {keys.ROOM_ID_KEY: room.id})

    def _tombstone(self, room: Room):
        if room.is_private:
            self.store.remove_where(room.messages_id, None)
            self.store.remove(room.rooms_collection, room.id)
            self.store.remove(keys.COLLECTIONS_COLLECTION, room.messages_id)
            self.store.remove(keys.COLLECTIONS_COLLECTION, room.rooms_collection)
        else:
            self.store.remove_where(room.messages_id, {keys.ROOM_ID_KEY: room.id})
            self.store.remove(keys.PUBLIC_ROOMS_COLLECTION, room.id)

    def archive(self, room: Room) -> bool:
        with self.lock:
            current = self.state(room.id)
            if current != RoomState.ACTIVE:
                self.logger.info("Room %s is %s, archive skipped", room.id, current.value)
                return False
            self.states[room.id] = RoomState.ARCHIVING
            # unsubscribe before evicting or replication refills the local copy
            self.subscriptions.remove_subscriptions(room)
            try:
                self._evict(room)
            except SQLAlchemyError:
                db.session.rollback()
                self.logger.exception("Could not evict data for room %s", room.id)
            self.local_store.archive_room(room)
            self.states[room.id] = RoomState.ARCHIVED
        self.registry.refresh()
        self.logger.info("Archived room %s", room.id)
        return True

    def unarchive(self, room: Room) -> bool:
        with self.lock:
            current = self.state(room.id)
            if current != RoomState.ARCHIVED:
                self.logger.info("Room %s is %s, unarchive skipped", room.id, current.value)
                return False
            self.states[room.id] = RoomState.UNARCHIVING
            self.local_store.unarchive_room(room.id)
            if self.store.get(room.rooms_collection, room.id) is None:
                self.logger.warning("No local replica of room %s yet, waiting for sync", room.id)
            self.subscriptions.add_subscriptions(room)
            self.states[room.id] = RoomState.ACTIVE
        self.registry.refresh()
        self.logger.info("Unarchived room %s", room.id)
        return True

    def delete(self, room: Room) -> bool:
        if room.is_default or room.id == keys.PUBLIC_ROOM_ALIAS:
            self.logger.warning("Refusing to delete the default public room")
            return False
        if room.is_private and not room.collection_id:
            self.logger.error("Private room %s has no collection id, delete skipped", room.id)
            return False
        with self.lock:
            if self.state(room.id) == RoomState.DELETED:
                return False
            if self.subscriptions.has_subscriptions(room.id):
                self.subscriptions.remove_subscriptions(room)
            try:
                self._tombstone(room)
            except SQLAlchemyError:
                db.session.rollback()
                self.logger.exception("Could not remove data for room %s", room.id)
            if room.is_private:
                self.local_store.remove_private_room(room.id)
            self.local_store.unarchive_room(room.id)
            self.states[room.id] = RoomState.DELETED
        self.registry.refresh()
        self.logger.info("Deleted room %s", room.id)
        return True
