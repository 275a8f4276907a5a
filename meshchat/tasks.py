from datetime import timedelta

from . import keys
from .local_store import LocalStore
from .rooms import decode_rooms
from .service import within_retention
from .schemas import utcnow
from .store import DocumentStore


def message_namespaces(store: DocumentStore, local_store: LocalStore) -> set[str]:
    namespaces = {keys.PUBLIC_MESSAGES_ID, keys.PUBLIC_MESSAGES_COLLECTION}
    rooms = decode_rooms(store.query(keys.PUBLIC_ROOMS_COLLECTION), store.logger)
    rooms += local_store.private_rooms()
    namespaces.update(room.messages_id for room in rooms if room.messages_id)
    return namespaces


def purge_expired_messages(store: DocumentStore, local_store: LocalStore, retention_days: int = 30) -> int:
    cutoff = utcnow() - timedelta(days=retention_days)
    purged = 0
    for namespace in sorted(message_namespaces(store, local_store)):
        purged += store.evict(namespace, lambda doc: not within_retention(doc, cutoff))
    return purged
