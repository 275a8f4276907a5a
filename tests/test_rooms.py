from datetime import datetime, timezone

from meshchat.rooms import RoomRegistry, compute_visible_rooms
from meshchat.schemas import Room
from meshchat.subscriptions import SubscriptionManager


def make_room(room_id, day, **fields):
    created = datetime(2024, 1, day, tzinfo=timezone.utc)
    return Room(id=room_id, name=room_id.upper(), messages_id="messages", collection_id="rooms",
                created_on=created, **fields)


def test_visible_rooms_exclude_archived_and_sort_newest_first():
    rooms = [make_room("a", 1), make_room("b", 3), make_room("c", 2)]
    visible = compute_visible_rooms(rooms, ["c", "ghost"])
    assert [room.id for room in visible] == ["b", "a"]


def test_archived_id_without_room_never_appears():
    assert compute_visible_rooms([], ["ghost"]) == []


def test_registry_publishes_and_subscribes(store, local_store):
    store.upsert("rooms", make_room("a", 1).to_document())
    manager = SubscriptionManager(store)
    registry = RoomRegistry(store, local_store, manager).start()

    assert [room.id for room in registry.public_rooms.value] == ["a"]
    assert manager.has_subscriptions("a")

    store.upsert("rooms", make_room("b", 2).to_document())
    assert [room.id for room in registry.public_rooms.value] == ["b", "a"]
    assert manager.has_subscriptions("b")
    registry.stop()


def test_registry_hides_archived_rooms(store, local_store):
    room = make_room("a", 1)
    store.upsert("rooms", room.to_document())
    manager = SubscriptionManager(store)
    registry = RoomRegistry(store, local_store, manager).start()

    manager.remove_subscriptions(room)
    local_store.archive_room(room)
    assert registry.public_rooms.value == []
    assert [r.id for r in registry.archived_rooms.value] == ["a"]
    assert not manager.has_subscriptions("a")
    registry.close()


def test_registry_lists_private_rooms(store, local_store):
    manager = SubscriptionManager(store)
    registry = RoomRegistry(store, local_store, manager).start()
    private = make_room("p", 5, is_private=True)
    local_store.add_private_room(private)
    assert [room.id for room in registry.private_rooms.value] == ["p"]
    assert manager.has_subscriptions("p")
    registry.close()
