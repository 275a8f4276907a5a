"""
Chat session facade.

``ChatService`` wires the subscription manager, room registry, normalizer,
archive coordinator and user store around one document store and exposes
the operations the API layer calls. One instance is one logged-in session;
after ``logout`` every operation raises ``SessionClosed``.
"""
import functools
import io
import logging
import threading
from datetime import timedelta
from typing import Any, Mapping, Optional

import qrcode
from flask import current_app
from pydantic import ValidationError

from . import keys
from .archive import ArchiveCoordinator
from .attachments import (
    LARGE_IMAGE,
    THUMBNAIL,
    AttachmentFetcher,
    AttachmentStore,
    attachment_filename,
    image_metadata,
    make_thumbnail,
    staged_file,
    to_jpeg,
)
from .errors import InvalidInput, NotFound, SessionClosed
from .feeds import BaseChangeBus, Feed, get_change_bus
from .local_store import LocalStore
from .normalizer import MessageNormalizer
from .rooms import RoomRegistry
from .schemas import ChatUser, Message, Room, iso, new_id, parse_iso, to_epoch_ms, utcnow
from .store import ConflictPolicy, DocumentStore, LiveQuery
from .subscriptions import SubscriptionManager
from .users import UserStore

ALLOWED_CONTROL_CHARS = {"\t", "\n", "\r"}


def validate_text(text: str, limit: int = 2500) -> str:
    if not isinstance(text, str):
        raise InvalidInput("message text must be a string")
    if len(text) > limit:
        raise InvalidInput(f"message is longer than {limit} characters")
    for ch in text:
        if ch not in ALLOWED_CONTROL_CHARS and not ch.isprintable():
            raise InvalidInput("message contains control characters")
    return text


def within_retention(doc: dict, cutoff) -> bool:
    created_on = parse_iso(doc.get(keys.CREATED_ON_KEY))
    if created_on is not None and created_on >= cutoff:
        return True
    cutoff_ms = to_epoch_ms(cutoff)
    for key in (keys.TIME_MS_KEY, "b"):
        value = doc.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= cutoff_ms:
            return True
    return False


def room_filter(room: Room):
    def in_room(doc: dict) -> bool:
        room_id = doc.get(keys.ROOM_ID_KEY)
        if room_id:
            return room_id == room.id
        # TAK clients write without a room id into the default namespace
        return room.is_default or room.is_private

    return in_room


def requires_session(func):
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        with self.lock:
            if self.closed:
                raise SessionClosed()
            return func(self, *args, **kwargs)

    return wrapper


class ChatService:
    def __init__(self, store: DocumentStore, local_store: LocalStore, attachments: AttachmentStore,
                 bus: BaseChangeBus, config: Optional[Mapping[str, Any]] = None,
                 logger: Optional[logging.Logger] = None):
        config = config or {}
        self.store = store
        self.local_store = local_store
        self.attachments = attachments
        self.bus = bus
        self.logger = logger or logging.getLogger(__name__)
        self.users_collection = config.get("USERS_COLLECTION", keys.DEFAULT_USERS_COLLECTION)
        self.retention_days = int(config.get("RETENTION_DAYS", 30))
        self.character_limit = int(config.get("MESSAGE_CHARACTER_LIMIT", 2500))
        self.thumbnail_size = int(config.get("THUMBNAIL_SIZE", 282))
        self.jpeg_quality = int(config.get("JPEG_QUALITY", 90))
        self.peer_key = config.get("PEER_KEY", "") or ""
        self.feed_size = int(config.get("FEED_QUEUE_SIZE", 100))
        self.configured_user_id = config.get("USER_ID")

        self.lock = threading.RLock()
        self.closed = False
        self._message_queries: dict[int, LiveQuery] = {}
        self._message_feeds: dict[int, Feed] = {}

        self.subscriptions = SubscriptionManager(store, self.logger)
        self.normalizer = MessageNormalizer(store, self.users_collection, self.logger)
        self.users = UserStore(store, local_store, self.users_collection, self.logger, self.feed_size)
        self.registry = RoomRegistry(store, local_store, self.subscriptions, self.logger, self.feed_size)
        self.archive = ArchiveCoordinator(store, local_store, self.subscriptions, self.registry, self.logger)

    def start(self) -> "ChatService":
        with self.lock:
            self.subscriptions.subscribe_collection(self.users_collection)
            self.subscriptions.subscribe_collection(keys.PUBLIC_ROOMS_COLLECTION)
            self._create_default_public_room()
            if self.configured_user_id and not self.users.current_user_id:
                self.users.set_current_user_id(self.configured_user_id)
            self.users.start()
            self.registry.start()
        self.logger.info("Chat session started")
        return self

    def _create_default_public_room(self):
        if self.store.get(keys.PUBLIC_ROOMS_COLLECTION, keys.PUBLIC_ROOM_ID) is not None:
            return
        room = Room(
            id=keys.PUBLIC_ROOM_ID,
            name=keys.PUBLIC_ROOM_NAME,
            messages_id=keys.PUBLIC_MESSAGES_ID,
            collection_id=keys.PUBLIC_ROOMS_COLLECTION,
            created_by=keys.CREATED_BY_UNKNOWN,
        )
        self.store.upsert(keys.PUBLIC_ROOMS_COLLECTION, room.to_document(), conflict=ConflictPolicy.UPDATE)
        self.logger.info("Created default public room")

    # feeds

    @property
    def public_rooms(self) -> Feed:
        return self.registry.public_rooms

    @property
    def private_rooms(self) -> Feed:
        return self.registry.private_rooms

    @property
    def archived_rooms(self) -> Feed:
        return self.registry.archived_rooms

    @property
    def current_user(self) -> Feed:
        return self.users.current_user

    @property
    def all_users(self) -> Feed:
        return self.users.all_users

    @property
    def current_user_id(self) -> Optional[str]:
        return self.users.current_user_id

    # rooms

    @requires_session
    def create_room(self, name: str, room_id: Optional[str] = None, is_private: bool = False,
                    is_generated: bool = False) -> Room:
        created_by = self.users.current_user_id or keys.UNKNOWN_USER_ID
        if is_private:
            room = Room(
                id=room_id or new_id(),
                name=name,
                messages_id=new_id(),
                collection_id=new_id(),
                created_by=created_by,
                is_generated=is_generated,
                is_private=True,
            )
            self.store.upsert(room.rooms_collection, room.to_document(), conflict=ConflictPolicy.UPDATE)
            for namespace in (room.messages_id, room.rooms_collection):
                self.store.upsert(keys.COLLECTIONS_COLLECTION, {keys.DB_ID_KEY: namespace},
                                  conflict=ConflictPolicy.IGNORE)
            self.archive.forget(room.id)
            self.local_store.add_private_room(room)
        else:
            room = Room(
                id=room_id or new_id(),
                name=name,
                messages_id=keys.PUBLIC_MESSAGES_COLLECTION,
                collection_id=keys.PUBLIC_ROOMS_COLLECTION,
                created_by=created_by,
                is_generated=is_generated,
            )
            self.archive.forget(room.id)
            self.subscriptions.add_subscriptions(room)
            self.store.upsert(keys.PUBLIC_ROOMS_COLLECTION, room.to_document(), conflict=ConflictPolicy.UPDATE)
        self.logger.info("Created %s room %s", "private" if is_private else "public", room.id)
        return room

    @requires_session
    def room(self, room: Room) -> Optional[Room]:
        """Resolve a possibly stale or placeholder room against the store."""
        doc = self.store.get(room.rooms_collection, room.id)
        if doc is None:
            self.logger.warning("Expected room %s in %s", room.id, room.rooms_collection)
            return None
        return Room.from_document(doc)

    @requires_session
    def find_room(self, room_id: str) -> Optional[Room]:
        if room_id == keys.PUBLIC_ROOM_ALIAS:
            room_id = keys.PUBLIC_ROOM_ID
        doc = self.store.get(keys.PUBLIC_ROOMS_COLLECTION, room_id)
        if doc is not None:
            return Room.from_document(doc)
        for room in self.local_store.private_rooms() + self.local_store.archived_rooms():
            if room.id == room_id:
                return room
        self.logger.warning("Room %s not found", room_id)
        return None

    def read_room_by_id(self, room_id: str) -> Room:
        """Like ``find_room`` but raises ``NotFound``."""
        room = self.find_room(room_id)
        if room is None:
            raise NotFound("room", room_id)
        return room

    @requires_session
    def archive_room(self, room: Room) -> bool:
        return self.archive.archive(room)

    @requires_session
    def unarchive_room(self, room: Room) -> bool:
        return self.archive.unarchive(room)

    @requires_session
    def delete_room(self, room: Room) -> bool:
        return self.archive.delete(room)

    # private rooms

    @requires_session
    def join_private_room(self, invite: str) -> Optional[Room]:
        room = Room.from_invite(invite or "")
        if room is None:
            self.logger.warning("Malformed private room invite")
            return None
        self.archive.forget(room.id)
        self.local_store.add_private_room(room)
        self.logger.info("Joined private room %s", room.id)
        return room

    def private_room_invite(self, room: Room) -> str:
        return room.invite_text()

    def private_room_qr_code(self, room: Room) -> bytes:
        img = qrcode.make(self.private_room_invite(room))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    # messages

    def _author(self) -> tuple[str, str]:
        user_id = self.users.current_user_id
        if not user_id:
            return keys.CREATED_BY_UNKNOWN, keys.UNKNOWN_USER_NAME
        user = self.users.user(user_id)
        return user_id, (user.name if user else user_id)

    @requires_session
    def create_message(self, room: Room, text: str) -> Optional[Message]:
        validate_text(text, self.character_limit)
        if not text.strip():
            raise InvalidInput("message is empty")
        if not self.users.current_user_id:
            self.logger.warning("Cannot send a message without a current user")
            return None
        stored = self.room(room)
        if stored is None:
            return None
        author_id, author_name = self._author()
        message = Message.outgoing(stored.id, text, author_id, author_name, peer_key=self.peer_key)
        self.store.upsert(stored.messages_id, message.to_document(), conflict=ConflictPolicy.UPDATE)
        return message

    @requires_session
    def edit_message(self, room: Room, message: Message, text: str) -> Message:
        validate_text(text, self.character_limit)
        if not text.strip():
            return self._redact(room, message, keys.DELETED_TEXT_MESSAGE)
        fields = {keys.TEXT_KEY: text, keys.MSG_KEY: text}
        if not self.store.update(room.messages_id, message.id, fields):
            raise NotFound("message", message.id)
        return message.model_copy(update={"text": text, "msg": text})

    def _redact(self, room: Room, message: Message, tombstone: str, **extra) -> Message:
        fields = {
            keys.TEXT_KEY: tombstone,
            keys.MSG_KEY: tombstone,
            keys.ARCHIVED_MESSAGE_KEY: tombstone,
            keys.IS_ARCHIVED_KEY: True,
        }
        fields.update(extra)
        if not self.store.update(room.messages_id, message.id, fields):
            raise NotFound("message", message.id)
        changes = {"text": tombstone, "msg": tombstone, "archived_message": tombstone, "is_archived": True}
        if keys.THUMBNAIL_IMAGE_TOKEN_KEY in extra:
            changes["thumbnail_image_token"] = None
            changes["large_image_token"] = None
        return message.model_copy(update=changes)

    @requires_session
    def delete_text_message(self, room: Room, message: Message) -> Message:
        return self._redact(room, message, keys.DELETED_TEXT_MESSAGE)

    @requires_session
    def delete_image_message(self, room: Room, message: Message) -> Message:
        for token in (message.thumbnail_image_token, message.large_image_token):
            if token:
                self.attachments.delete(token)
        return self._redact(
            room,
            message,
            keys.DELETED_IMAGE_MESSAGE,
            **{keys.THUMBNAIL_IMAGE_TOKEN_KEY: None, keys.LARGE_IMAGE_TOKEN_KEY: None},
        )

    @requires_session
    def create_image_message(self, room: Room, image_bytes: bytes, text: Optional[str] = None) -> Optional[Message]:
        if text:
            validate_text(text, self.character_limit)
        stored = self.room(room)
        if stored is None:
            return None
        author_id, author_name = self._author()

        created_on = utcnow()
        timestamp = iso(created_on)
        thumbnail = make_thumbnail(image_bytes, self.thumbnail_size, self.jpeg_quality)
        metadata = image_metadata(
            attachment_filename(author_name, THUMBNAIL, timestamp),
            author_id, author_name, len(image_bytes), timestamp,
        )
        with staged_file(thumbnail, "thumbnail.jpg") as path:
            thumb_token = self.attachments.store(path, metadata)

        message = Message.outgoing(
            stored.id, text or "", author_id, author_name,
            peer_key=self.peer_key,
            created_on=created_on,
            thumbnail_image_token=thumb_token.to_document(),
        )
        self.store.upsert(stored.messages_id, message.to_document(), conflict=ConflictPolicy.UPDATE)

        timestamp = iso(utcnow())
        large = to_jpeg(image_bytes, self.jpeg_quality)
        metadata = image_metadata(
            attachment_filename(author_name, LARGE_IMAGE, timestamp),
            author_id, author_name, len(image_bytes), timestamp,
        )
        with staged_file(large, "largeImage.jpg") as path:
            large_token = self.attachments.store(path, metadata)
        self.store.update(stored.messages_id, message.id, {keys.LARGE_IMAGE_TOKEN_KEY: large_token.to_document()})
        self.logger.info("Created image message %s in room %s", message.id, stored.id)
        return message.model_copy(update={"large_image_token": large_token.to_document()})

    @requires_session
    def fetch_attachment(self, token, large: bool = False) -> Optional[AttachmentFetcher]:
        if large and not self.users.accept_large_images:
            self.logger.info("Large image fetch refused by preference")
            return None
        return self.attachments.fetch(token)

    def _normalize_all(self, docs: list[dict], room: Room) -> list[Message]:
        messages = []
        for doc in docs:
            try:
                messages.append(self.normalizer.normalize(doc, room.messages_id, room.id))
            except ValidationError:
                self.logger.warning("Skipping malformed message %s", doc.get(keys.DB_ID_KEY))
        messages.sort(key=lambda message: message.created_on)
        return messages

    @requires_session
    def messages_feed(self, room: Room, retention_days: Optional[int] = None) -> Feed:
        days = self.retention_days if retention_days is None else retention_days
        cutoff = utcnow() - timedelta(days=days)
        in_room = room_filter(room)
        feed = Feed([], maxsize=self.feed_size, name=f"messages:{room.id}")

        def on_change(docs: list[dict]):
            feed.publish(self._normalize_all(docs, room))

        live_query = self.store.observe(
            room.messages_id,
            on_change,
            where=lambda doc: in_room(doc) and within_retention(doc, cutoff),
        )
        self._message_feeds[id(feed)] = feed
        self._message_queries[id(feed)] = live_query
        return feed

    @requires_session
    def message_feed(self, message_id: str, collection: str) -> Feed:
        feed = Feed(None, maxsize=self.feed_size, name=f"message:{message_id}")

        def on_change(docs: list[dict]):
            if not docs:
                return
            try:
                feed.publish(self.normalizer.normalize(docs[0], collection))
            except ValidationError:
                self.logger.warning("Skipping malformed message %s", message_id)

        live_query = self.store.observe(collection, on_change, where={keys.DB_ID_KEY: message_id})
        self._message_feeds[id(feed)] = feed
        self._message_queries[id(feed)] = live_query
        return feed

    @requires_session
    def find_message(self, room: Room, message_id: str) -> Optional[Message]:
        doc = self.store.get(room.messages_id, message_id)
        if doc is None:
            self.logger.info("Message %s not found in %s", message_id, room.messages_id)
            return None
        return self.normalizer.normalize(doc, room.messages_id, room.id)

    def release_feed(self, feed: Feed):
        with self.lock:
            live_query = self._message_queries.pop(id(feed), None)
            self._message_feeds.pop(id(feed), None)
        if live_query is not None:
            live_query.cancel()
        feed.close()

    # users

    @requires_session
    def set_current_user(self, name: str) -> ChatUser:
        return self.users.set_current_user(name)

    @requires_session
    def set_current_user_id(self, user_id: str):
        self.users.set_current_user_id(user_id)

    @requires_session
    def update_user(self, user_id: str, **fields) -> Optional[ChatUser]:
        return self.users.update_user(user_id, **fields)

    @requires_session
    def toggle_subscription(self, room_id: str) -> Optional[ChatUser]:
        return self.users.toggle_subscription(room_id)

    @requires_session
    def mark_room_read(self, room_id: str) -> Optional[ChatUser]:
        return self.users.mark_room_read(room_id)

    @requires_session
    def set_accept_large_images(self, value: bool):
        self.users.accept_large_images = value

    # session

    def logout(self):
        with self.lock:
            if self.closed:
                return
            self.closed = True
            self.subscriptions.logout_all()
            for live_query in self._message_queries.values():
                live_query.cancel()
            for feed in self._message_feeds.values():
                feed.close()
            self._message_queries.clear()
            self._message_feeds.clear()
            self.registry.close()
            self.users.close()
            self.attachments.cancel_all()
            self.store.close()
            self.local_store.close()
        self.logger.info("Chat session logged out")


def create_chat_service(app) -> ChatService:
    bus = app.extensions.get("change_bus") or get_change_bus()
    store = DocumentStore(bus, app.logger)
    local_store = LocalStore(
        accept_large_images_default=app.config.get("ACCEPT_LARGE_IMAGES", True),
        feed_size=app.config.get("FEED_QUEUE_SIZE", 100),
        logger=app.logger,
    )
    attachments = AttachmentStore(
        app.config["UPLOAD_FOLDER"],
        chunk_size=app.config.get("ATTACHMENT_CHUNK_SIZE", 64 * 1024),
        logger=app.logger,
    )
    return ChatService(store, local_store, attachments, bus, app.config, app.logger).start()


def get_chat_service() -> ChatService:
    service = current_app.extensions.get("chat_service")
    if service is None or service.closed:
        service = create_chat_service(current_app)
        current_app.extensions["chat_service"] = service
    return service
