"""
Document schemas for the chat collections.

Each model maps one document shape. Documents crossing the store boundary
use the wire keys (``_id``, ``roomId``, ``createdOn`` ...); the Python side
uses snake_case attributes. ``from_document`` validates a raw map and
``to_document`` dumps a JSON-safe map with wire keys.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from . import keys


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4()).upper()


def iso(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_epoch_ms(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Replicated documents carry explicit nulls for unset fields.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @classmethod
    def from_document(cls, doc: dict):
        return cls.model_validate(doc)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Room(Document):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(alias=keys.DB_ID_KEY)
    name: str = ""
    messages_id: str = Field("", alias=keys.MESSAGES_ID_KEY)
    collection_id: Optional[str] = Field(None, alias=keys.COLLECTION_ID_KEY)
    created_by: str = Field("", alias=keys.CREATED_BY_KEY)
    created_on: datetime = Field(default_factory=utcnow, alias=keys.CREATED_ON_KEY)
    is_generated: bool = Field(False, alias=keys.IS_GENERATED_KEY)
    is_private: bool = Field(False, alias=keys.IS_PRIVATE_KEY)

    @field_validator("created_on", mode="before")
    @classmethod
    def _created_on(cls, value):
        return parse_iso(value) or utcnow()

    @field_serializer("created_on")
    def _dump_created_on(self, value: datetime) -> str:
        return iso(value)

    @property
    def rooms_collection(self) -> str:
        return self.collection_id or keys.PUBLIC_ROOMS_COLLECTION

    @property
    def is_default(self) -> bool:
        return self.id == keys.PUBLIC_ROOM_ID

    def invite_text(self) -> str:
        """Seven newline separated fields, the payload of a private room QR code."""
        parts = [
            self.id,
            self.collection_id or "",
            self.messages_id,
            self.name,
            "true" if self.is_private else "false",
            self.created_by,
            iso(self.created_on),
        ]
        return "\n".join(parts)

    @classmethod
    def from_invite(cls, text: str) -> Optional["Room"]:
        parts = text.split("\n")
        if len(parts) != 7:
            return None
        room_id, collection_id, messages_id, name, private, created_by, created_on = parts
        if not room_id or not messages_id:
            return None
        return cls(
            id=room_id,
            name=name,
            messages_id=messages_id,
            collection_id=collection_id or None,
            created_by=created_by,
            created_on=parse_iso(created_on) or datetime.fromtimestamp(0, tz=timezone.utc),
            is_private=private.strip().lower() != "false",
        )


class AttachmentToken(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    size: int = Field(0, alias="len")
    metadata: dict[str, str] = Field(default_factory=dict)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Message(Document):
    id: str = Field(default_factory=new_id, alias=keys.DB_ID_KEY)
    created_on: datetime = Field(default_factory=utcnow, alias=keys.CREATED_ON_KEY)
    room_id: str = Field("", alias=keys.ROOM_ID_KEY)
    text: str = ""
    author_id: str = Field("", alias=keys.USER_ID_KEY)
    large_image_token: Optional[dict[str, Any]] = Field(None, alias=keys.LARGE_IMAGE_TOKEN_KEY)
    thumbnail_image_token: Optional[dict[str, Any]] = Field(None, alias=keys.THUMBNAIL_IMAGE_TOKEN_KEY)
    archived_message: Optional[str] = Field(None, alias=keys.ARCHIVED_MESSAGE_KEY)
    is_archived: bool = Field(False, alias=keys.IS_ARCHIVED_KEY)
    has_been_converted: Optional[bool] = Field(None, alias=keys.HAS_BEEN_CONVERTED_KEY)

    # TAK beta fields
    author_cs: str = Field("", alias=keys.AUTHOR_CS_KEY)
    legacy_author_id: str = Field("", alias=keys.AUTHOR_ID_KEY)
    author_loc: str = Field("", alias=keys.AUTHOR_LOC_KEY)
    author_type: str = Field("", alias=keys.AUTHOR_TYPE_KEY)
    msg: str = Field("", alias=keys.MSG_KEY)
    parent: str = Field("", alias=keys.PARENT_KEY)
    pks: str = Field("", alias=keys.PKS_KEY)
    room: str = Field("", alias=keys.ROOM_KEY)
    schver: int = Field(0, alias=keys.SCHVER_KEY)
    tak_uid: str = Field("", alias=keys.TAK_UID_KEY)
    time_ms: Optional[datetime] = Field(None, alias=keys.TIME_MS_KEY)

    # TAK 1.0 fields
    tak_r: bool = Field(False, alias="_r")
    tak_v: int = Field(2, alias="_v")
    tak_a: str = Field("", alias="a")
    tak_b: Optional[datetime] = Field(None, alias="b")
    tak_d: str = Field("", alias="d")
    tak_e: str = Field("", alias="e")

    @field_validator("created_on", mode="before")
    @classmethod
    def _created_on(cls, value):
        return parse_iso(value) or utcnow()

    @field_validator("time_ms", "tak_b", mode="before")
    @classmethod
    def _epoch(cls, value):
        return from_epoch_ms(value)

    @field_serializer("created_on")
    def _dump_created_on(self, value: datetime) -> str:
        return iso(value)

    @field_serializer("time_ms", "tak_b")
    def _dump_epoch(self, value: Optional[datetime]) -> Optional[int]:
        return to_epoch_ms(value) if value is not None else None

    @property
    def is_image_message(self) -> bool:
        return self.thumbnail_image_token is not None or self.large_image_token is not None

    @property
    def legacy_timestamp(self) -> datetime:
        return self.time_ms or self.tak_b or utcnow()

    @classmethod
    def outgoing(
        cls,
        room_id: str,
        text: str,
        author_id: str,
        author_name: str,
        peer_key: str = "",
        created_on: Optional[datetime] = None,
        **extra,
    ) -> "Message":
        """Build a new message in the dual canonical + TAK shape."""
        created_on = created_on or utcnow()
        return cls(
            created_on=created_on,
            room_id=room_id,
            text=text,
            author_id=author_id,
            has_been_converted=True,
            author_cs=author_name,
            legacy_author_id=author_id,
            author_loc=keys.TAK_AUTHOR_LOC,
            author_type=keys.TAK_AUTHOR_TYPE,
            msg=text,
            parent=keys.TAK_PARENT,
            pks=peer_key,
            room=keys.TAK_ROOM,
            schver=keys.TAK_SCHEMA_VERSION,
            tak_uid=new_id(),
            time_ms=created_on,
            tak_a=peer_key,
            tak_b=created_on,
            tak_d=author_id,
            tak_e=author_name,
            **extra,
        )


class ChatUser(Document):
    id: str = Field(alias=keys.DB_ID_KEY)
    name: str = keys.NO_NAME
    subscriptions: dict[str, Optional[datetime]] = Field(default_factory=dict)
    mentions: dict[str, list[str]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _legacy_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get(keys.NAME_KEY):
            first = data.get(keys.FIRST_NAME_KEY)
            last = data.get(keys.LAST_NAME_KEY)
            if first is not None or last is not None:
                data = dict(data)
                data[keys.NAME_KEY] = f"{first or ''} {last or ''}"
        return data

    @field_validator("subscriptions", mode="before")
    @classmethod
    def _subscriptions(cls, value):
        if not isinstance(value, dict):
            return {}
        return {room_id: parse_iso(stamp) for room_id, stamp in value.items()}

    @field_serializer("subscriptions")
    def _dump_subscriptions(self, value: dict) -> dict:
        return {room_id: iso(stamp) if stamp else None for room_id, stamp in value.items()}

    @classmethod
    def unknown_user(cls) -> "ChatUser":
        return cls(id=keys.UNKNOWN_USER_ID, name=keys.NO_NAME)
