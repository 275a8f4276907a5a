import pytest
from sqlalchemy.exc import SQLAlchemyError

from meshchat.archive import ArchiveCoordinator, RoomState
from meshchat.rooms import RoomRegistry
from meshchat.schemas import Room
from meshchat.subscriptions import SubscriptionManager


@pytest.fixture
def parts(store, local_store):
    manager = SubscriptionManager(store)
    registry = RoomRegistry(store, local_store, manager).start()
    coordinator = ArchiveCoordinator(store, local_store, manager, registry)
    yield manager, registry, coordinator
    registry.close()


def public_room(store, room_id="r1"):
    room = Room(id=room_id, name="Ops", messages_id="messages", collection_id="rooms")
    store.upsert("rooms", room.to_document())
    return room


def test_archive_public_room(store, local_store, parts):
    manager, registry, coordinator = parts
    room = public_room(store)
    store.upsert("messages", {"_id": "m1", "roomId": "r1"})
    store.upsert("messages", {"_id": "m2", "roomId": "other"})
    assert manager.has_subscriptions("r1")

    assert coordinator.archive(room)

    assert not manager.has_subscriptions("r1")
    assert [doc["_id"] for doc in store.query("messages")] == ["m2"]
    assert local_store.is_archived("r1")
    assert coordinator.state("r1") == RoomState.ARCHIVED
    assert registry.public_rooms.value == []
    assert [r.id for r in registry.archived_rooms.value] == ["r1"]


def test_archive_twice_is_noop(store, parts):
    _, _, coordinator = parts
    room = public_room(store)
    assert coordinator.archive(room)
    assert not coordinator.archive(room)


def test_unarchive_restores_room(store, local_store, parts):
    manager, registry, coordinator = parts
    room = public_room(store)
    coordinator.archive(room)

    assert coordinator.unarchive(room)
    assert manager.has_subscriptions("r1")
    assert not local_store.is_archived("r1")
    assert coordinator.state("r1") == RoomState.ACTIVE
    assert [r.id for r in registry.public_rooms.value] == ["r1"]


def test_unarchive_without_replica_is_logged(store, local_store, parts, caplog):
    manager, _, coordinator = parts
    room = Room(id="gone", name="Gone", messages_id="messages", collection_id="rooms")
    local_store.archive_room(room)
    assert coordinator.unarchive(room)
    assert "gone" in caplog.text
    assert manager.has_subscriptions("gone")


def test_archive_private_room_evicts_namespace(store, local_store, parts):
    manager, registry, coordinator = parts
    room = Room(id="p1", name="Secret", messages_id="M-NS", collection_id="C-NS", is_private=True)
    store.upsert("C-NS", room.to_document())
    store.upsert("M-NS", {"_id": "m1", "roomId": "p1"})
    local_store.add_private_room(room)
    assert manager.has_subscriptions("p1")

    coordinator.archive(room)
    assert store.query("M-NS") == []
    assert store.get("C-NS", "p1") is None
    assert registry.private_rooms.value == []


def test_default_room_cannot_be_deleted(parts, caplog):
    _, _, coordinator = parts
    room = Room(id="ChatContact-Ditto", name="Public Room", messages_id="chat", collection_id="rooms")
    assert not coordinator.delete(room)
    assert "default public room" in caplog.text


def test_delete_private_room(store, local_store, parts):
    manager, _, coordinator = parts
    room = Room(id="p1", name="Secret", messages_id="M-NS", collection_id="C-NS", is_private=True)
    store.upsert("C-NS", room.to_document())
    store.upsert("M-NS", {"_id": "m1", "roomId": "p1"})
    store.upsert("collections", {"_id": "M-NS"})
    store.upsert("collections", {"_id": "C-NS"})
    local_store.add_private_room(room)

    assert coordinator.delete(room)
    assert store.get("C-NS", "p1") is None
    assert store.query("M-NS") == []
    assert store.query("collections") == []
    assert local_store.private_rooms() == []
    assert not manager.has_subscriptions("p1")
    assert coordinator.state("p1") == RoomState.DELETED
    assert not coordinator.archive(room)


def test_delete_public_room(store, parts):
    _, registry, coordinator = parts
    room = public_room(store, "r2")
    store.upsert("messages", {"_id": "m1", "roomId": "r2"})
    assert coordinator.delete(room)
    assert store.get("rooms", "r2") is None
    assert store.query("messages") == []
    assert registry.public_rooms.value == []


def test_delete_continues_when_tombstoning_fails(store, local_store, parts, monkeypatch, caplog):
    _, _, coordinator = parts
    room = Room(id="p1", name="Secret", messages_id="M-NS", collection_id="C-NS", is_private=True)
    store.upsert("C-NS", room.to_document())
    local_store.add_private_room(room)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(store, "remove_where", broken)
    assert coordinator.delete(room)
    assert "Could not remove data for room p1" in caplog.text
    assert local_store.private_rooms() == []
    assert coordinator.state("p1") == RoomState.DELETED
