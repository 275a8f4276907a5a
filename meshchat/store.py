"""
Replicated document store.

Collections of JSON documents kept in the ``documents`` table. Every write
publishes a change event on the change bus; live queries re-run on events
for their collection. ``remove`` leaves a tombstone so the deletion can
replicate, ``evict`` drops the local copy only.
"""
import itertools
import logging
import threading
import uuid
from enum import Enum
from typing import Callable, Optional, Union

from .extensions import db
from .models import DocumentRecord

Filter = Union[None, dict, Callable[[dict], bool]]


class ConflictPolicy(str, Enum):
    IGNORE = "ignore"
    UPDATE = "update"


def matches(doc: dict, where: Filter) -> bool:
    if where is None:
        return True
    if callable(where):
        return bool(where(doc))
    return all(doc.get(key) == value for key, value in where.items())


def _sort_key(value):
    if value is None:
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


class SubscriptionHandle:
    """Registered interest in a slice of a collection."""

    def __init__(self, store: "DocumentStore", handle_id: int, collection: str, where: Filter):
        self.store = store
        self.id = handle_id
        self.collection = collection
        self.where = where
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self.store._drop_subscription(self)

    def __repr__(self):
        state = "cancelled" if self.cancelled else "active"
        return f"<SubscriptionHandle {self.id} {self.collection} {state}>"


class LiveQuery:
    def __init__(self, store, collection, callback, where=None, sort=None, descending=False):
        self.store = store
        self.collection = collection
        self.callback = callback
        self.where = where
        self.sort = sort
        self.descending = descending
        self.cancelled = False
        self._last = None
        self._running = False
        self._pending = False
        self._lock = threading.Lock()
        self._remove_listener = None

    def start(self):
        self._remove_listener = self.store.bus.add_listener(self._on_change)
        self.refresh()
        return self

    def _on_change(self, event: dict):
        if event.get("collection") == self.collection:
            self.refresh()

    def refresh(self):
        with self._lock:
            if self.cancelled:
                return
            if self._running:
                # the callback itself wrote to the collection; re-run once it returns
                self._pending = True
                return
            self._running = True
        try:
            while True:
                with self._lock:
                    self._pending = False
                result = self.store.query(self.collection, self.where, self.sort, self.descending)
                if result != self._last:
                    self._last = result
                    self.callback(result)
                with self._lock:
                    if not self._pending or self.cancelled:
                        break
        finally:
            with self._lock:
                self._running = False

    def cancel(self):
        with self._lock:
            if self.cancelled:
                return
            self.cancelled = True
        if self._remove_listener:
            self._remove_listener()
        self.store._drop_live_query(self)


class DocumentStore:
    def __init__(self, bus, logger: Optional[logging.Logger] = None):
        self.bus = bus
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.RLock()
        self._handle_ids = itertools.count(1)
        self._subscriptions: dict[int, SubscriptionHandle] = {}
        self._live_queries: list[LiveQuery] = []

    # reads

    def _record(self, collection: str, doc_id: str) -> Optional[DocumentRecord]:
        return DocumentRecord.query.filter_by(collection=collection, doc_id=doc_id).first()

    def query(self, collection: str, where: Filter = None, sort: Optional[str] = None, descending: bool = False) -> list[dict]:
        rows = (
            DocumentRecord.query.filter_by(collection=collection, is_deleted=False)
            .order_by(DocumentRecord.id.asc())
            .all()
        )
        docs = [dict(row.body) for row in rows if matches(row.body, where)]
        if sort:
            docs.sort(key=lambda d: _sort_key(d.get(sort)), reverse=descending)
        return docs

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        record = self._record(collection, doc_id)
        if not record or record.is_deleted:
            return None
        return dict(record.body)

    def count(self, collection: str) -> int:
        return DocumentRecord.query.filter_by(collection=collection, is_deleted=False).count()

    # writes

    def upsert(self, collection: str, document: dict, conflict: ConflictPolicy = ConflictPolicy.UPDATE) -> str:
        doc_id = document.get("_id") or str(uuid.uuid4()).upper()
        body = dict(document)
        body["_id"] = doc_id
        with self.lock:
            record = self._record(collection, doc_id)
            if record is None:
                db.session.add(DocumentRecord(collection=collection, doc_id=doc_id, body=body))
            elif record.is_deleted:
                record.body = body
                record.is_deleted = False
            elif conflict == ConflictPolicy.IGNORE:
                return doc_id
            else:
                merged = dict(record.body)
                merged.update(body)
                record.body = merged
            db.session.commit()
        self.bus.publish(collection, "upsert", [doc_id])
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict) -> bool:
        with self.lock:
            record = self._record(collection, doc_id)
            if not record or record.is_deleted:
                self.logger.warning("Update skipped, %s/%s not found", collection, doc_id)
                return False
            merged = dict(record.body)
            merged.update(fields)
            record.body = merged
            db.session.commit()
        self.bus.publish(collection, "update", [doc_id])
        return True

    def remove(self, collection: str, doc_id: str) -> bool:
        with self.lock:
            record = self._record(collection, doc_id)
            if not record or record.is_deleted:
                return False
            record.is_deleted = True
            record.body = {"_id": doc_id}
            db.session.commit()
        self.bus.publish(collection, "remove", [doc_id])
        return True

    def remove_where(self, collection: str, where: Filter) -> int:
        with self.lock:
            rows = DocumentRecord.query.filter_by(collection=collection, is_deleted=False).all()
            removed = []
            for row in rows:
                if matches(row.body, where):
                    row.is_deleted = True
                    row.body = {"_id": row.doc_id}
                    removed.append(row.doc_id)
            if removed:
                db.session.commit()
        if removed:
            self.bus.publish(collection, "remove", removed)
        return len(removed)

    def evict(self, collection: str, where: Filter = None) -> int:
        with self.lock:
            rows = DocumentRecord.query.filter_by(collection=collection).all()
            evicted = []
            for row in rows:
                if row.is_deleted and where is not None:
                    continue
                if matches(row.body, where):
                    evicted.append(row.doc_id)
                    db.session.delete(row)
            if evicted:
                db.session.commit()
        if evicted:
            self.logger.info("Evicted %s documents from %s", len(evicted), collection)
            self.bus.publish(collection, "evict", evicted)
        return len(evicted)

    # subscriptions and observers

    def subscribe(self, collection: str, where: Filter = None) -> SubscriptionHandle:
        with self.lock:
            handle = SubscriptionHandle(self, next(self._handle_ids), collection, where)
            self._subscriptions[handle.id] = handle
        return handle

    def _drop_subscription(self, handle: SubscriptionHandle):
        with self.lock:
            self._subscriptions.pop(handle.id, None)

    def active_subscriptions(self) -> list[SubscriptionHandle]:
        with self.lock:
            return list(self._subscriptions.values())

    def observe(self, collection: str, callback: Callable[[list[dict]], None], where: Filter = None,
                sort: Optional[str] = None, descending: bool = False) -> LiveQuery:
        live_query = LiveQuery(self, collection, callback, where, sort, descending)
        with self.lock:
            self._live_queries.append(live_query)
        return live_query.start()

    def _drop_live_query(self, live_query: LiveQuery):
        with self.lock:
            if live_query in self._live_queries:
                self._live_queries.remove(live_query)

    def live_queries(self) -> list[LiveQuery]:
        with self.lock:
            return list(self._live_queries)

    def close(self):
        for live_query in self.live_queries():
            live_query.cancel()
        for handle in self.active_subscriptions():
            handle.cancel()
