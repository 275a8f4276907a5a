from datetime import timedelta

import pytest

from meshchat import keys
from meshchat.attachments import FetchCompleted, FetchProgress
from meshchat.errors import AttachmentFailure, AttachmentReason, InvalidInput, NotFound, SessionClosed
from meshchat.models import AttachmentBlob
from meshchat.schemas import Message, to_epoch_ms, utcnow
from meshchat.service import validate_text


def test_default_public_room_is_bootstrapped(service):
    room = service.find_room("public")
    assert room.id == keys.PUBLIC_ROOM_ID
    assert room.name == "Public Room"
    assert room.messages_id == "chat"
    assert [r.id for r in service.public_rooms.value] == [keys.PUBLIC_ROOM_ID]
    assert service.subscriptions.has_subscriptions(keys.PUBLIC_ROOM_ID)


def test_create_public_room(service):
    room = service.create_room("Ops")
    assert room.messages_id == "messages"
    assert room.collection_id == "rooms"
    assert room.created_by == service.current_user_id
    assert room.id in [r.id for r in service.public_rooms.value]
    found = service.read_room_by_id(room.id)
    assert (found.id, found.name, found.messages_id) == (room.id, "Ops", "messages")


def test_create_private_room_uses_fresh_namespaces(service):
    room = service.create_room("Secret", is_private=True)
    assert room.is_private
    assert room.messages_id not in ("messages", "chat")
    assert room.collection_id not in ("rooms", room.messages_id)
    assert [r.id for r in service.private_rooms.value] == [room.id]
    assert service.store.get(room.collection_id, room.id) is not None


def test_read_room_by_id_raises_for_unknown(service):
    with pytest.raises(NotFound):
        service.read_room_by_id("nope")
    assert service.find_room("nope") is None


def test_create_and_list_messages(service):
    room = service.create_room("Ops")
    first = service.create_message(room, "hello")
    second = service.create_message(room, "world")
    feed = service.messages_feed(room)
    assert [m.id for m in feed.value] == [first.id, second.id]
    assert feed.value[0].author_id == service.current_user_id
    assert feed.value[0].author_cs == "Alice Doe"

    third = service.create_message(room, "again")
    assert feed.value[-1].id == third.id
    service.release_feed(feed)


def test_message_validation():
    with pytest.raises(InvalidInput):
        validate_text("x" * 2501)
    with pytest.raises(InvalidInput):
        validate_text("bell\x07")
    assert validate_text("tab\tnew\nline\r") == "tab\tnew\nline\r"


def test_empty_message_is_rejected(service):
    room = service.find_room("public")
    with pytest.raises(InvalidInput):
        service.create_message(room, "   ")


def test_legacy_messages_are_normalized_in_feed(service):
    room = service.find_room("public")
    now_ms = to_epoch_ms(utcnow())
    service.store.upsert("chat", {"_id": "tak-1", "msg": "from TAK", "authorId": "tak-user",
                                  "authorCs": "VIPER", "timeMs": now_ms})
    feed = service.messages_feed(room)
    (message,) = feed.value
    assert message.text == "from TAK"
    assert message.author_id == "tak-user"
    assert message.has_been_converted is True
    assert service.store.get("chat", "tak-1")["hasBeenConverted"] is True
    assert service.users.user("tak-user").name == "VIPER"


def test_retention_window_filters_old_messages(service):
    room = service.find_room("public")
    old_ms = to_epoch_ms(utcnow() - timedelta(days=40))
    service.store.upsert("chat", {"_id": "old", "msg": "old", "authorId": "u", "timeMs": old_ms})
    service.store.upsert("chat", {"_id": "new", "msg": "new", "authorId": "u", "b": to_epoch_ms(utcnow())})
    assert [m.id for m in service.messages_feed(room).value] == ["new"]
    assert {m.id for m in service.messages_feed(room, retention_days=60).value} == {"old", "new"}


def test_message_feed_for_single_message(service):
    room = service.find_room("public")
    message = service.create_message(room, "watch me")
    feed = service.message_feed(message.id, room.messages_id)
    assert feed.value.text == "watch me"
    service.edit_message(room, message, "edited")
    assert feed.value.text == "edited"


def test_edit_to_blank_redacts(service):
    room = service.find_room("public")
    message = service.create_message(room, "oops")
    redacted = service.edit_message(room, message, "  ")
    stored = Message.from_document(service.store.get("chat", message.id))
    for m in (redacted, stored):
        assert m.text == "[text deleted by sender]"
        assert m.archived_message == "[text deleted by sender]"
        assert m.is_archived


def test_delete_text_message(service):
    room = service.find_room("public")
    message = service.create_message(room, "bye")
    service.delete_text_message(room, message)
    assert service.find_message(room, message.id).text == "[text deleted by sender]"


def test_image_message_flow(service, png_bytes):
    room = service.create_room("Photos")
    message = service.create_image_message(room, png_bytes, text="look")
    assert message.is_image_message
    assert message.thumbnail_image_token["metadata"]["filename"].startswith("Alice-Doe_thumbnail_")
    assert message.large_image_token["metadata"]["filename"].startswith("Alice-Doe_largeImage_")

    stored = service.find_message(room, message.id)
    assert stored.large_image_token["id"] == message.large_image_token["id"]

    events = list(service.fetch_attachment(stored.thumbnail_image_token))
    assert isinstance(events[0], FetchProgress)
    assert isinstance(events[-1], FetchCompleted)
    assert events[-1].data[:2] == b"\xff\xd8"
    assert events[-1].metadata["fileformat"] == ".jpg"


def test_bad_image_raises_attachment_failure(service):
    room = service.find_room("public")
    with pytest.raises(AttachmentFailure) as excinfo:
        service.create_image_message(room, b"not an image")
    assert excinfo.value.reason == AttachmentReason.THUMBNAIL_CREATE


def test_large_image_fetch_respects_preference(service, png_bytes):
    room = service.find_room("public")
    message = service.create_image_message(room, png_bytes)
    service.set_accept_large_images(False)
    assert service.fetch_attachment(message.large_image_token, large=True) is None
    assert service.fetch_attachment(message.thumbnail_image_token) is not None


def test_delete_image_message(service, png_bytes):
    room = service.find_room("public")
    message = service.create_image_message(room, png_bytes)
    assert AttachmentBlob.query.count() == 2
    service.delete_image_message(room, message)
    stored = service.find_message(room, message.id)
    assert stored.text == "[image deleted by sender]"
    assert stored.thumbnail_image_token is None
    assert stored.large_image_token is None
    assert AttachmentBlob.query.count() == 0


def test_private_room_invite_round_trip(service):
    room = service.create_room("Secret", is_private=True)
    invite = service.private_room_invite(room)
    assert len(invite.split("\n")) == 7
    assert service.private_room_qr_code(room)[:8] == b"\x89PNG\r\n\x1a\n"

    service.delete_room(room)
    joined = service.join_private_room(invite)
    assert joined.id == room.id
    assert joined.messages_id == room.messages_id
    assert room.id in [r.id for r in service.private_rooms.value]


def test_malformed_invite_returns_none(service):
    assert service.join_private_room("just one line") is None


def test_archive_and_unarchive_through_service(service):
    room = service.create_room("Ops")
    service.create_message(room, "hi")
    assert service.archive_room(room)
    assert room.id not in [r.id for r in service.public_rooms.value]
    assert service.store.query("messages") == []
    assert service.unarchive_room(room)
    assert room.id in [r.id for r in service.public_rooms.value]


def test_delete_default_room_refused(service):
    assert not service.delete_room(service.find_room("public"))


def test_logout_is_a_barrier(service):
    feed = service.messages_feed(service.find_room("public"))
    service.logout()
    assert service.closed
    assert feed.closed
    assert service.public_rooms.closed
    assert service.store.active_subscriptions() == []
    assert service.store.live_queries() == []
    with pytest.raises(SessionClosed):
        service.create_room("late")
    service.logout()


def test_edit_of_removed_message_raises(service):
    room = service.find_room("public")
    message = service.create_message(room, "short lived")
    service.store.remove(room.messages_id, message.id)
    with pytest.raises(NotFound):
        service.edit_message(room, message, "too late")
    with pytest.raises(NotFound):
        service.delete_text_message(room, message)
