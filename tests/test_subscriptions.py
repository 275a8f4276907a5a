import logging

from meshchat.schemas import Room
from meshchat.subscriptions import SubscriptionManager

PUBLIC = Room(id="r1", name="Ops", messages_id="messages", collection_id="rooms")
PRIVATE = Room(id="p1", name="Secret", messages_id="M-NS", collection_id="C-NS", is_private=True)


def test_public_room_subscribes_to_its_messages(store):
    manager = SubscriptionManager(store)
    assert manager.add_subscriptions(PUBLIC)
    (handle,) = manager.handles("r1")
    assert handle.collection == "messages"
    assert handle.where == {"roomId": "r1"}


def test_private_room_subscribes_to_room_and_namespace(store):
    manager = SubscriptionManager(store)
    manager.add_subscriptions(PRIVATE)
    handles = manager.handles("p1")
    assert sorted(h.collection for h in handles) == ["C-NS", "M-NS"]
    room_handle = next(h for h in handles if h.collection == "C-NS")
    assert room_handle.where == {"_id": "p1"}


def test_adding_twice_does_not_leak_handles(store):
    manager = SubscriptionManager(store)
    assert manager.add_subscriptions(PUBLIC)
    assert not manager.add_subscriptions(PUBLIC)
    assert len(store.active_subscriptions()) == 1


def test_remove_cancels_handles(store):
    manager = SubscriptionManager(store)
    manager.add_subscriptions(PRIVATE)
    handles = manager.handles("p1")
    assert manager.remove_subscriptions(PRIVATE)
    assert all(h.cancelled for h in handles)
    assert not manager.has_subscriptions("p1")
    assert store.active_subscriptions() == []


def test_remove_untracked_room_warns(store, caplog):
    manager = SubscriptionManager(store)
    with caplog.at_level(logging.WARNING):
        assert not manager.remove_subscriptions(PUBLIC)
    assert "r1" in caplog.text


def test_collection_subscription_is_idempotent(store):
    manager = SubscriptionManager(store)
    first = manager.subscribe_collection("users")
    assert manager.subscribe_collection("users") is first


def test_logout_all_cancels_everything(store):
    manager = SubscriptionManager(store)
    manager.logout_all()
    manager.add_subscriptions(PUBLIC)
    manager.add_subscriptions(PRIVATE)
    users = manager.subscribe_collection("users")
    manager.logout_all()
    assert manager.room_ids() == []
    assert users.cancelled
    assert store.active_subscriptions() == []
