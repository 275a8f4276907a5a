from datetime import datetime, timezone

from meshchat.normalizer import MessageNormalizer
from meshchat.schemas import Message

STAMP = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
STAMP_MS = int(STAMP.timestamp() * 1000)


def tak_record(**fields):
    record = {"_id": "m1", "msg": "hello from TAK", "timeMs": STAMP_MS}
    record.update(fields)
    return record


def test_author_id_takes_precedence(store):
    store.upsert("chat", tak_record(authorId="u1", authorCs="Alpha", d="u9", e="Other"))
    normalizer = MessageNormalizer(store)
    message = normalizer.normalize(store.get("chat", "m1"), "chat")

    assert message.has_been_converted is True
    assert message.text == "hello from TAK"
    assert message.author_id == "u1"
    assert message.created_on == STAMP
    assert store.get("users", "u1")["name"] == "Alpha"
    stored = store.get("chat", "m1")
    assert stored["hasBeenConverted"] is True
    assert stored["userId"] == "u1"


def test_falls_back_to_d_with_e_as_name(store):
    normalizer = MessageNormalizer(store)
    message = normalizer.normalize(tak_record(d="u2", e="Bravo"), "chat")
    assert message.author_id == "u2"
    assert store.get("users", "u2")["name"] == "Bravo"


def test_falls_back_to_author_cs(store):
    normalizer = MessageNormalizer(store)
    message = normalizer.normalize(tak_record(authorCs="u2"), "chat")
    assert message.author_id == "u2"
    assert store.get("users", "u2")["name"] == "u2"


def test_timestamp_falls_back_to_b(store):
    record = tak_record(authorId="u1")
    del record["timeMs"]
    record["b"] = STAMP_MS
    message = MessageNormalizer(store).normalize(record, "chat")
    assert message.created_on == STAMP


def test_existing_user_is_not_overwritten(store):
    store.upsert("users", {"_id": "u1", "name": "Real Name", "subscriptions": {}, "mentions": {}})
    MessageNormalizer(store).normalize(tak_record(authorId="u1", authorCs="Callsign"), "chat")
    assert store.get("users", "u1")["name"] == "Real Name"


def test_converted_message_is_returned_without_writes(store, bus):
    events = []
    bus.add_listener(events.append)
    message = Message.outgoing("r1", "hi", "u1", "Ada", created_on=STAMP)
    assert MessageNormalizer(store).normalize(message.to_document(), "messages") == message
    assert events == []


def test_normalize_is_idempotent(store):
    normalizer = MessageNormalizer(store)
    once = normalizer.normalize(tak_record(authorId="u1", authorCs="Alpha"), "chat")
    twice = normalizer.normalize(once, "chat")
    assert twice == once
    assert normalizer.normalize(store.get("chat", "m1"), "chat").text == once.text


def test_users_collection_is_configurable(store):
    MessageNormalizer(store, users_collection="people").normalize(tak_record(authorId="u1", authorCs="A"), "chat")
    assert store.get("people", "u1") is not None
    assert store.get("users", "u1") is None
