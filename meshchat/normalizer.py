import logging
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from . import keys
from .extensions import db
from .schemas import ChatUser, Message
from .store import ConflictPolicy, DocumentStore


def legacy_author(message: Message) -> tuple[str, str]:
    """Return ``(author_id, display_name)`` for a TAK record."""
    if message.legacy_author_id:
        return message.legacy_author_id, message.author_cs or message.legacy_author_id
    if message.tak_d:
        return message.tak_d, message.tak_e or message.tak_d
    if message.author_cs:
        return message.author_cs, message.author_cs
    return "", ""


class MessageNormalizer:
    """Upgrades legacy TAK message records to the canonical shape in place."""

    def __init__(self, store: DocumentStore, users_collection: str = keys.DEFAULT_USERS_COLLECTION,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.users_collection = users_collection
        self.logger = logger or logging.getLogger(__name__)

    def convert(self, message: Message, room_id: str = "") -> Message:
        if message.has_been_converted is True:
            return message
        author_id, _ = legacy_author(message)
        return message.model_copy(
            update={
                "text": message.msg or message.text,
                "author_id": author_id or message.author_id or keys.CREATED_BY_UNKNOWN,
                "created_on": message.legacy_timestamp,
                "room_id": message.room_id or room_id,
                "has_been_converted": True,
            }
        )

    def normalize(self, record: Union[dict, Message], collection: str, room_id: str = "") -> Message:
        message = record if isinstance(record, Message) else Message.from_document(record)
        if message.has_been_converted is True:
            return message

        converted = self.convert(message, room_id)
        author_id, author_name = legacy_author(message)
        if author_id:
            user = ChatUser(id=author_id, name=author_name)
            try:
                self.store.upsert(self.users_collection, user.to_document(), conflict=ConflictPolicy.IGNORE)
            except SQLAlchemyError:
                db.session.rollback()
                self.logger.exception("Could not record TAK user %s", author_id)

        try:
            self.store.upsert(collection, converted.to_document(), conflict=ConflictPolicy.UPDATE)
        except SQLAlchemyError:
            db.session.rollback()
            self.logger.exception("Could not store converted message %s in %s", converted.id, collection)
        else:
            self.logger.debug("Converted TAK message %s in %s", converted.id, collection)
        return converted
