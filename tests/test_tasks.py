from datetime import timedelta

from meshchat.schemas import Room, to_epoch_ms, utcnow
from meshchat.tasks import message_namespaces, purge_expired_messages


def test_message_namespaces_include_private_rooms(store, local_store):
    local_store.add_private_room(Room(id="p1", name="Secret", messages_id="M-NS", collection_id="C-NS",
                                      is_private=True))
    assert message_namespaces(store, local_store) == {"chat", "messages", "M-NS"}


def test_purge_expired_evicts_old_messages(store, local_store):
    old_ms = to_epoch_ms(utcnow() - timedelta(days=45))
    store.upsert("chat", {"_id": "tak-old", "msg": "old", "timeMs": old_ms})
    store.upsert("chat", {"_id": "tak-new", "msg": "new", "b": to_epoch_ms(utcnow())})
    store.upsert("messages", {"_id": "m1", "roomId": "r1", "createdOn": utcnow().isoformat()})

    assert purge_expired_messages(store, local_store, retention_days=30) == 1
    assert store.get("chat", "tak-old") is None
    assert store.get("chat", "tak-new") is not None
    assert store.get("messages", "m1") is not None


def test_purge_expired_cli(app, store):
    store.upsert("chat", {"_id": "tak-old", "msg": "old", "timeMs": 0})
    result = app.test_cli_runner().invoke(args=["purge-expired"])
    assert "Evicted 1 expired messages" in result.output


def test_wipe_data_requires_confirmation(app, store):
    store.upsert("rooms", {"_id": "r1", "name": "Ops"})
    runner = app.test_cli_runner()
    assert "--yes" in runner.invoke(args=["wipe-data"]).output
    assert store.count("rooms") == 1
    runner.invoke(args=["wipe-data", "--yes"])
    assert store.count("rooms") == 0
