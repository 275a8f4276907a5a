import logging
from typing import Any, Optional

from pydantic import ValidationError

from . import keys
from .extensions import db
from .feeds import Feed
from .models import LocalPreference
from .schemas import Room


class LocalStore:
    """Device-local preferences: current user id, archive markers, private rooms."""

    def __init__(self, accept_large_images_default: bool = True, feed_size: int = 100,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.accept_large_images_default = accept_large_images_default
        self.feed_size = feed_size
        self._feeds: dict[str, Feed] = {}
        self.archived_rooms_feed = Feed(self.archived_rooms(), maxsize=feed_size, name="archived_rooms")
        self.private_rooms_feed = Feed(self.private_rooms(), maxsize=feed_size, name="private_rooms")

    # raw key/value access

    def get(self, key: str, default: Any = None) -> Any:
        pref = db.session.get(LocalPreference, key)
        if pref is None or pref.value is None:
            return default
        return pref.value

    def set(self, key: str, value: Any):
        pref = db.session.get(LocalPreference, key)
        if pref is None:
            db.session.add(LocalPreference(key=key, value=value))
        else:
            pref.value = value
        db.session.commit()
        feed = self._feeds.get(key)
        if feed is not None:
            feed.publish(value)

    def delete(self, key: str):
        pref = db.session.get(LocalPreference, key)
        if pref is not None:
            db.session.delete(pref)
            db.session.commit()
        feed = self._feeds.get(key)
        if feed is not None:
            feed.publish(None)

    def feed(self, key: str) -> Feed:
        if key not in self._feeds:
            self._feeds[key] = Feed(self.get(key), maxsize=self.feed_size, name=key)
        return self._feeds[key]

    # current user

    @property
    def current_user_id(self) -> Optional[str]:
        return self.get(keys.PREF_USER_ID)

    @current_user_id.setter
    def current_user_id(self, value: Optional[str]):
        if value is None:
            self.delete(keys.PREF_USER_ID)
        else:
            self.set(keys.PREF_USER_ID, value)

    @property
    def current_user_id_feed(self) -> Feed:
        return self.feed(keys.PREF_USER_ID)

    @property
    def accept_large_images(self) -> bool:
        return bool(self.get(keys.PREF_ACCEPT_LARGE_IMAGES, self.accept_large_images_default))

    @accept_large_images.setter
    def accept_large_images(self, value: bool):
        self.set(keys.PREF_ACCEPT_LARGE_IMAGES, bool(value))

    # room maps

    def _decode_rooms(self, key: str) -> list[Room]:
        rooms = []
        for room_id, doc in (self.get(key) or {}).items():
            try:
                rooms.append(Room.from_document(doc))
            except ValidationError:
                self.logger.error("Could not decode stored room %s under %s", room_id, key)
                continue
        return rooms

    def _put_room(self, key: str, room: Room):
        rooms = dict(self.get(key) or {})
        rooms[room.id] = room.to_document()
        self.set(key, rooms)

    def _pop_room(self, key: str, room_id: str) -> bool:
        rooms = dict(self.get(key) or {})
        if room_id not in rooms:
            return False
        rooms.pop(room_id)
        self.set(key, rooms)
        return True

    def archived_room_ids(self) -> list[str]:
        return list((self.get(keys.PREF_ARCHIVED_ROOMS) or {}).keys())

    def archived_rooms(self) -> list[Room]:
        return self._decode_rooms(keys.PREF_ARCHIVED_ROOMS)

    def is_archived(self, room_id: str) -> bool:
        return room_id in (self.get(keys.PREF_ARCHIVED_ROOMS) or {})

    def archive_room(self, room: Room):
        self._put_room(keys.PREF_ARCHIVED_ROOMS, room)
        self.archived_rooms_feed.publish(self.archived_rooms())

    def unarchive_room(self, room_id: str) -> bool:
        removed = self._pop_room(keys.PREF_ARCHIVED_ROOMS, room_id)
        if removed:
            self.archived_rooms_feed.publish(self.archived_rooms())
        return removed

    def private_rooms(self) -> list[Room]:
        return self._decode_rooms(keys.PREF_PRIVATE_ROOMS)

    def add_private_room(self, room: Room):
        self._put_room(keys.PREF_PRIVATE_ROOMS, room)
        self.private_rooms_feed.publish(self.private_rooms())

    def remove_private_room(self, room_id: str) -> bool:
        removed = self._pop_room(keys.PREF_PRIVATE_ROOMS, room_id)
        if removed:
            self.private_rooms_feed.publish(self.private_rooms())
        return removed

    def close(self):
        self.archived_rooms_feed.close()
        self.private_rooms_feed.close()
        for feed in self._feeds.values():
            feed.close()
        self._feeds.clear()
