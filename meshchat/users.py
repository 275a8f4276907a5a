import logging
import threading
from typing import Optional

from pydantic import ValidationError

from . import keys
from .errors import InvalidInput, NotFound
from .feeds import Feed
from .local_store import LocalStore
from .schemas import ChatUser, new_id, utcnow
from .store import ConflictPolicy, DocumentStore, LiveQuery


class UserStore:
    """Current user identity plus the replicated users collection."""

    def __init__(self, store: DocumentStore, local_store: LocalStore,
                 users_collection: str = keys.DEFAULT_USERS_COLLECTION,
                 logger: Optional[logging.Logger] = None, feed_size: int = 100):
        self.store = store
        self.local_store = local_store
        self.users_collection = users_collection
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.current_user = Feed(None, maxsize=feed_size, name="current_user")
        self.all_users = Feed([], maxsize=feed_size, name="all_users")
        self.accept_large_images_feed = Feed(local_store.accept_large_images, maxsize=feed_size,
                                             name="accept_large_images")
        self._live_query: Optional[LiveQuery] = None
        self._listener = None

    def start(self):
        with self.lock:
            if self._live_query is not None:
                return self
            self._listener = self.local_store.current_user_id_feed.listen(self._on_user_id, replay=False)
            self._live_query = self.store.observe(self.users_collection, self._on_users, sort=keys.DB_ID_KEY)
        return self

    def _decode(self, docs: list[dict]) -> list[ChatUser]:
        users = []
        for doc in docs:
            try:
                users.append(ChatUser.from_document(doc))
            except ValidationError:
                self.logger.warning("Skipping malformed user document %s", doc.get(keys.DB_ID_KEY))
        return users

    def _on_users(self, docs: list[dict]):
        users = self._decode(docs)
        self.all_users.publish(users)
        self._publish_current(users)

    def _on_user_id(self, _user_id):
        self._publish_current(self.all_users.value)

    def _publish_current(self, users: list[ChatUser]):
        user_id = self.current_user_id
        current = None
        if user_id:
            current = next((user for user in users if user.id == user_id), None)
        self.current_user.publish(current)

    # identity

    @property
    def current_user_id(self) -> Optional[str]:
        return self.local_store.current_user_id

    def set_current_user_id(self, user_id: str):
        self.local_store.current_user_id = user_id
        self.logger.info("Current user set to %s", user_id)

    def set_current_user(self, name: str) -> ChatUser:
        with self.lock:
            user_id = self.current_user_id or new_id()
            self.local_store.current_user_id = user_id
            if self.store.get(self.users_collection, user_id) is None:
                document = ChatUser(id=user_id, name=name).to_document()
            else:
                document = {keys.DB_ID_KEY: user_id, keys.NAME_KEY: name}
            self.store.upsert(self.users_collection, document, conflict=ConflictPolicy.UPDATE)
            return self.find_user_by_id(user_id)

    # lookups

    def add_user(self, user: ChatUser):
        self.store.upsert(self.users_collection, user.to_document(), conflict=ConflictPolicy.UPDATE)

    def find_user_by_id(self, user_id: str) -> ChatUser:
        doc = self.store.get(self.users_collection, user_id)
        if doc is None:
            raise NotFound("user", user_id)
        return ChatUser.from_document(doc)

    def user(self, user_id: str) -> Optional[ChatUser]:
        try:
            return self.find_user_by_id(user_id)
        except NotFound as exc:
            self.logger.info("%s", exc)
            return None

    def update_user(self, user_id: str, name: Optional[str] = None, subscriptions: Optional[dict] = None,
                    mentions: Optional[dict] = None, first_name: Optional[str] = None,
                    last_name: Optional[str] = None) -> Optional[ChatUser]:
        with self.lock:
            current = self.user(user_id)
            if current is None:
                return None
            if first_name is not None and last_name is not None:
                name = f"{first_name} {last_name}"
            doc = current.to_document()
            if name is not None:
                doc[keys.NAME_KEY] = name
            if subscriptions is not None:
                doc["subscriptions"] = subscriptions
            if mentions is not None:
                doc["mentions"] = mentions
            try:
                updated = ChatUser.from_document(doc)
            except ValidationError as exc:
                raise InvalidInput(f"invalid update for user {user_id}") from exc
            self.store.upsert(self.users_collection, updated.to_document(), conflict=ConflictPolicy.UPDATE)
            return updated

    def _current_or_none(self) -> Optional[ChatUser]:
        user_id = self.current_user_id
        if not user_id:
            self.logger.warning("No current user set")
            return None
        return self.user(user_id)

    def toggle_subscription(self, room_id: str) -> Optional[ChatUser]:
        with self.lock:
            user = self._current_or_none()
            if user is None:
                return None
            subscriptions = dict(user.subscriptions)
            subscriptions[room_id] = None if subscriptions.get(room_id) is not None else utcnow()
            return self.update_user(user.id, subscriptions=subscriptions)

    def mark_room_read(self, room_id: str) -> Optional[ChatUser]:
        with self.lock:
            user = self._current_or_none()
            if user is None:
                return None
            subscriptions = dict(user.subscriptions)
            subscriptions[room_id] = utcnow()
            mentions = dict(user.mentions)
            mentions[room_id] = []
            return self.update_user(user.id, subscriptions=subscriptions, mentions=mentions)

    # preferences

    @property
    def accept_large_images(self) -> bool:
        return self.local_store.accept_large_images

    @accept_large_images.setter
    def accept_large_images(self, value: bool):
        self.local_store.accept_large_images = value
        self.accept_large_images_feed.publish(bool(value))

    def stop(self):
        with self.lock:
            if self._live_query is not None:
                self._live_query.cancel()
                self._live_query = None
            if self._listener is not None:
                self._listener.cancel()
                self._listener = None

    def close(self):
        self.stop()
        self.current_user.close()
        self.all_users.close()
        self.accept_large_images_feed.close()
