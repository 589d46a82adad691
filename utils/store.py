"""
Document store used by the watch party subsystem.

Paths are slash separated Firestore paths, e.g. ``watchParties/ABC234`` or
``watchParties/ABC234/voiceSignals``. Values written through ``update`` and
``set`` may contain the Firestore transform sentinels (``ArrayUnion``,
``ArrayRemove``, ``Increment``, ``SERVER_TIMESTAMP``, ``DELETE_FIELD``); both
backends honour them.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, TypeVar

from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore import Client as FirestoreClient

from errors import BackendUnavailable, NotFound
from models import now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeType = Literal["added", "modified", "removed"]

# fn(current) -> (field updates or None, result)
TransactionFn = Callable[[Optional[dict]], Tuple[Optional[dict], T]]


@dataclass
class DocumentChange:
    type: ChangeType
    id:   str
    data: Optional[dict]


class Subscription:
    """Handle returned by every watch call; ``unsubscribe`` is idempotent."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            self._cancel()
        except Exception:
            logger.exception("Failed to cancel subscription")


class DocumentStore(ABC):

    @abstractmethod
    def get(self, path: str) -> Optional[dict]: ...

    @abstractmethod
    def create(self, path: str, data: dict) -> bool:
        """Create the document only if absent. Returns False when it already exists."""

    @abstractmethod
    def set(self, path: str, data: dict, merge: bool = False) -> None: ...

    @abstractmethod
    def update(self, path: str, fields: dict) -> None:
        """Field-scoped update; raises NotFound when the document is missing."""

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def transaction(self, path: str, fn: TransactionFn) -> Any:
        """Read-modify-write of one document; ``fn`` may be re-run on contention."""

    @abstractmethod
    def latest(self, collection: str, order_by: str, limit: int) -> List[dict]:
        """Most recent ``limit`` documents of a collection, newest first."""

    @abstractmethod
    def watch_document(self, path: str, callback: Callable[[Optional[dict]], None]) -> Subscription: ...

    @abstractmethod
    def watch_collection(
        self, collection: str, callback: Callable[[List[DocumentChange], bool], None]
    ) -> Subscription:
        """``callback(changes, initial)``; the first call carries the existing documents."""

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    def close(self) -> None:
        pass


# ─── Firestore ──────────────────────────────────────────────────────────────────
class FirestoreStore(DocumentStore):
    def __init__(self, db: FirestoreClient):
        self._db = db

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except gexc.NotFound as e:
            raise NotFound(str(e.message)) from e
        except (gexc.GoogleAPICallError, gexc.RetryError) as e:
            logger.warning("Firestore call failed: %s", e)
            raise BackendUnavailable(str(e)) from e

    def get(self, path):
        snap = self._call(self._db.document(path).get)
        return snap.to_dict() if snap.exists else None

    def create(self, path, data):
        try:
            self._db.document(path).create(data)
        except gexc.AlreadyExists:
            return False
        except (gexc.GoogleAPICallError, gexc.RetryError) as e:
            logger.warning("Firestore create failed: %s", e)
            raise BackendUnavailable(str(e)) from e
        return True

    def set(self, path, data, merge=False):
        self._call(self._db.document(path).set, data, merge=merge)

    def update(self, path, fields):
        self._call(self._db.document(path).update, fields)

    def delete(self, path):
        self._call(self._db.document(path).delete)

    def transaction(self, path, fn):
        ref = self._db.document(path)

        @firestore.transactional
        def _run(tx):
            snap = ref.get(transaction=tx)
            updates, result = fn(snap.to_dict() if snap.exists else None)
            if updates:
                tx.update(ref, updates)
            return result

        return self._call(_run, self._db.transaction())

    def latest(self, collection, order_by, limit):
        query = (
            self._db.collection(collection)
                .order_by(order_by, direction=firestore.Query.DESCENDING)
                .limit(limit)
        )
        return [d.to_dict() for d in self._call(lambda: list(query.stream()))]

    def watch_document(self, path, callback):
        def on_snapshot(snaps, _changes, _read_time):
            snap = snaps[0] if snaps else None
            callback(snap.to_dict() if snap is not None and snap.exists else None)

        watch = self._db.document(path).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)

    def watch_collection(self, collection, callback):
        state = {"initial": True}

        def on_snapshot(_docs, changes, _read_time):
            out = [
                DocumentChange(
                    type=c.type.name.lower(),
                    id=c.document.id,
                    data=c.document.to_dict() if c.type.name != "REMOVED" else None,
                )
                for c in changes
            ]
            initial, state["initial"] = state["initial"], False
            callback(out, initial)

        watch = self._db.collection(collection).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)

    def close(self):
        from utils.firebase import delete_firebase
        self._db.close()
        delete_firebase()


# ─── In-memory ──────────────────────────────────────────────────────────────────
def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0]

def _doc_id(path: str) -> str:
    return path.rsplit("/", 1)[1]

def _resolve(current: Any, value: Any) -> Any:
    if isinstance(value, firestore.ArrayUnion):
        out = list(current) if isinstance(current, list) else []
        for v in value.values:
            if v not in out:
                out.append(copy.deepcopy(v))
        return out
    if isinstance(value, firestore.ArrayRemove):
        out = list(current) if isinstance(current, list) else []
        return [v for v in out if v not in value.values]
    if isinstance(value, firestore.Increment):
        return (current if isinstance(current, (int, float)) else 0) + value.value
    if value is firestore.SERVER_TIMESTAMP:
        return now_utc()
    return copy.deepcopy(value)

def _merge(target: dict, data: dict) -> None:
    for key, value in data.items():
        if value is firestore.DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict):
            node = target.get(key)
            if not isinstance(node, dict):
                node = target[key] = {}
            _merge(node, value)
        else:
            target[key] = _resolve(target.get(key), value)

def _strip(data: dict) -> dict:
    # set() без merge: сентинелы разрешаются, DELETE_FIELD игнорируется
    out = {}
    for key, value in data.items():
        if value is firestore.DELETE_FIELD:
            continue
        out[key] = _strip(value) if isinstance(value, dict) else _resolve(None, value)
    return out

def _apply_update(doc: dict, fields: dict) -> None:
    for dotted, value in fields.items():
        *parents, leaf = dotted.split(".")
        node = doc
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        if value is firestore.DELETE_FIELD:
            node.pop(leaf, None)
        else:
            node[leaf] = _resolve(node.get(leaf), value)


class MemoryStore(DocumentStore):
    """Thread-safe in-process store with Firestore-like semantics.

    Watch callbacks are invoked synchronously on the writing thread, after the
    write is committed and outside the store lock.
    """

    def __init__(self):
        self._docs: Dict[str, dict] = {}
        self._lock = threading.RLock()
        self._doc_watchers: Dict[str, List[Callable]] = {}
        self._coll_watchers: Dict[str, List[Callable]] = {}

    # чтение
    def get(self, path):
        with self._lock:
            doc = self._docs.get(path)
            return copy.deepcopy(doc) if doc is not None else None

    def latest(self, collection, order_by, limit):
        with self._lock:
            docs = [
                (i, copy.deepcopy(d)) for i, (p, d) in enumerate(self._docs.items())
                if _parent(p) == collection
            ]
        # сортировка стабильна: при равных значениях порядок вставки сохраняется
        docs.sort(key=lambda item: (item[1].get(order_by) is None, item[1].get(order_by), item[0]))
        return [d for _, d in reversed(docs)][:limit]

    # запись
    def create(self, path, data):
        with self._lock:
            if path in self._docs:
                return False
            self._docs[path] = _strip(data)
        self._notify(path, "added")
        return True

    def set(self, path, data, merge=False):
        with self._lock:
            existed = path in self._docs
            if merge and existed:
                _merge(self._docs[path], data)
            elif merge:
                doc: dict = {}
                _merge(doc, data)
                self._docs[path] = doc
            else:
                self._docs[path] = _strip(data)
        self._notify(path, "modified" if existed else "added")

    def update(self, path, fields):
        with self._lock:
            doc = self._docs.get(path)
            if doc is None:
                raise NotFound(f"No document to update: {path}")
            _apply_update(doc, fields)
        self._notify(path, "modified")

    def delete(self, path):
        with self._lock:
            existed = self._docs.pop(path, None) is not None
        if existed:
            self._notify(path, "removed")

    def transaction(self, path, fn):
        with self._lock:
            doc = self._docs.get(path)
            updates, result = fn(copy.deepcopy(doc) if doc is not None else None)
            if updates:
                if doc is None:
                    raise NotFound(f"No document to update: {path}")
                _apply_update(doc, updates)
        if updates:
            self._notify(path, "modified")
        return result

    # подписки
    def watch_document(self, path, callback):
        with self._lock:
            self._doc_watchers.setdefault(path, []).append(callback)
        callback(self.get(path))
        return Subscription(lambda: self._remove(self._doc_watchers, path, callback))

    def watch_collection(self, collection, callback):
        with self._lock:
            self._coll_watchers.setdefault(collection, []).append(callback)
            existing = [
                DocumentChange("added", _doc_id(p), copy.deepcopy(d))
                for p, d in self._docs.items() if _parent(p) == collection
            ]
        callback(existing, True)
        return Subscription(lambda: self._remove(self._coll_watchers, collection, callback))

    def _remove(self, registry, key, callback):
        with self._lock:
            callbacks = registry.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def _notify(self, path: str, change: ChangeType) -> None:
        with self._lock:
            doc = self._docs.get(path)
            doc_callbacks = list(self._doc_watchers.get(path, []))
            coll_callbacks = list(self._coll_watchers.get(_parent(path), []))
        for cb in doc_callbacks:
            self._dispatch(cb, copy.deepcopy(doc) if doc is not None else None)
        for cb in coll_callbacks:
            data = copy.deepcopy(doc) if change != "removed" else None
            self._dispatch(cb, [DocumentChange(change, _doc_id(path), data)], False)

    @staticmethod
    def _dispatch(cb, *args):
        try:
            cb(*args)
        except Exception:
            logger.exception("Store watcher raised")

    def close(self):
        with self._lock:
            self._doc_watchers.clear()
            self._coll_watchers.clear()


def build_store(backend: str = "firestore") -> DocumentStore:
    if backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryStore()

    from utils.firebase import init_firebase, get_db
    init_firebase()
    return FirestoreStore(get_db())
