"""
Key-tree store used for all persistence.

Data is addressed by slash-separated paths (``users/alice``,
``products/diamond/stock``, ``branches``). Two backends share the same
interface: an in-process tree for development and tests, and MongoDB where the
first path segment names a collection and the second a document ``_id``.
"""

import copy
import logging
import threading
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config

logger = logging.getLogger(__name__)

# Roots that hold a single value (list or object) rather than keyed records.
LEAF_ROOTS = ("branches", "promotions")


class StoreError(Exception):
    """The store could not be reached or rejected the request."""


def split_path(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("Store path must not be empty")
    for p in parts:
        if "." in p or p.startswith("$"):
            raise ValueError(f"Invalid path segment: {p!r}")
    return parts


def new_id() -> str:
    return str(ObjectId())


class TreeStore:
    """Interface shared by the store backends."""

    backend = "abstract"

    def get(self, path: str) -> Any:
        raise NotImplementedError

    def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def remove(self, path: str) -> None:
        raise NotImplementedError

    def push(self, path: str) -> str:
        """Reserve a fresh child key under ``path``. Nothing is written."""
        split_path(path)
        return new_id()

    def adjust(self, path: str, field: str, delta: float,
               require_at_least: Optional[float] = None) -> Optional[float]:
        """
        Atomically add ``delta`` to the numeric ``field`` of the record at
        ``path``. When ``require_at_least`` is given the write only happens if
        the current value is at least that much.

        Returns the new value, or None if the record is absent or the
        condition did not hold.
        """
        raise NotImplementedError

    def update_if(self, path: str, expect: Dict[str, Any], fields: Dict[str, Any]) -> bool:
        """
        Like ``update``, but only when every ``expect`` field of the record at
        ``path`` still holds the given value. Returns False and writes nothing
        otherwise.
        """
        raise NotImplementedError

    def compare_and_set(self, path: str, expected: Any, value: Any) -> bool:
        """Replace the node at ``path`` only if it still equals ``expected``."""
        raise NotImplementedError

    def ping(self) -> dict:
        raise NotImplementedError


# -------------------- In-memory backend --------------------

class MemoryTreeStore(TreeStore):
    backend = "memory"

    def __init__(self, data: Optional[dict] = None):
        self._root: dict = copy.deepcopy(data) if data else {}
        self._lock = threading.RLock()

    def _node(self, parts: List[str]) -> Any:
        node: Any = self._root
        for p in parts:
            if not isinstance(node, dict) or p not in node:
                return None
            node = node[p]
        return node

    def _parent(self, parts: List[str]) -> dict:
        node = self._root
        for p in parts[:-1]:
            child = node.get(p)
            if child is None:
                child = node[p] = {}
            elif not isinstance(child, dict):
                raise ValueError(f"Path segment {p!r} holds a value, not a record")
            node = child
        return node

    def get(self, path: str) -> Any:
        parts = split_path(path)
        with self._lock:
            return copy.deepcopy(self._node(parts))

    def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        with self._lock:
            if value is None:
                self._remove(parts)
                return
            self._parent(parts)[parts[-1]] = copy.deepcopy(value)

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        parts = split_path(path)
        with self._lock:
            parent = self._parent(parts)
            node = parent.get(parts[-1])
            if not isinstance(node, dict):
                node = parent[parts[-1]] = {}
            for key, value in fields.items():
                if value is None:
                    node.pop(key, None)
                else:
                    node[key] = copy.deepcopy(value)

    def remove(self, path: str) -> None:
        parts = split_path(path)
        with self._lock:
            self._remove(parts)

    def _remove(self, parts: List[str]) -> None:
        parent = self._node(parts[:-1]) if len(parts) > 1 else self._root
        if isinstance(parent, dict):
            parent.pop(parts[-1], None)

    def adjust(self, path, field, delta, require_at_least=None):
        parts = split_path(path)
        with self._lock:
            node = self._node(parts)
            if not isinstance(node, dict):
                return None
            current = node.get(field, 0)
            if require_at_least is not None and current < require_at_least:
                return None
            node[field] = current + delta
            return node[field]

    def update_if(self, path, expect, fields):
        parts = split_path(path)
        with self._lock:
            node = self._node(parts)
            if not isinstance(node, dict):
                return False
            if any(node.get(k) != v for k, v in expect.items()):
                return False
            for key, value in fields.items():
                if value is None:
                    node.pop(key, None)
                else:
                    node[key] = copy.deepcopy(value)
            return True

    def compare_and_set(self, path, expected, value):
        parts = split_path(path)
        with self._lock:
            if self._node(parts) != expected:
                return False
            if value is None:
                self._remove(parts)
            else:
                self._parent(parts)[parts[-1]] = copy.deepcopy(value)
            return True

    def ping(self) -> dict:
        with self._lock:
            roots = sorted(self._root)
        return {"backend": self.backend, "name": "memory", "collections": roots[:10]}


# -------------------- MongoDB backend --------------------

def _translate_errors(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc
    return wrapper


def _dig(doc: Any, dotted: str) -> Any:
    node = doc
    for key in dotted.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


class MongoTreeStore(TreeStore):
    """
    Maps paths onto MongoDB:

    - ``orders``            -> every document of the ``orders`` collection
    - ``orders/<id>``       -> one document
    - ``orders/<id>/a/b``   -> field ``a.b`` of that document
    - ``promotions[/...]``  -> the ``value`` field of ``_root/promotions``
    """

    backend = "mongodb"
    ROOT_COLLECTION = "_root"

    def __init__(self, db, leaf_roots: Iterable[str] = LEAF_ROOTS):
        self.db = db
        self.leaf_roots = set(leaf_roots)

    @classmethod
    def from_url(cls, url: str, name: str) -> "MongoTreeStore":
        return cls(MongoClient(url)[name])

    def locate(self, path: str) -> Tuple[str, Optional[str], str]:
        """Return (collection, document id, dotted field prefix)."""
        parts = split_path(path)
        if parts[0] in self.leaf_roots:
            return self.ROOT_COLLECTION, parts[0], ".".join(["value"] + parts[1:])
        if len(parts) == 1:
            return parts[0], None, ""
        return parts[0], parts[1], ".".join(parts[2:])

    @_translate_errors
    def get(self, path):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None:
            out = {}
            for doc in self.db[coll].find({}):
                out[str(doc.pop("_id"))] = doc
            return out or None
        doc = self.db[coll].find_one({"_id": doc_id})
        if doc is None:
            return None
        doc.pop("_id", None)
        return _dig(doc, prefix) if prefix else doc

    @_translate_errors
    def set(self, path, value):
        coll, doc_id, prefix = self.locate(path)
        if value is None:
            self.remove(path)
            return
        if doc_id is None:
            if not isinstance(value, dict):
                raise ValueError("A collection can only be set to a mapping of records")
            self.db[coll].delete_many({})
            docs = [{"_id": k, **v} for k, v in value.items()]
            if docs:
                self.db[coll].insert_many(docs)
            return
        if prefix:
            self.db[coll].update_one({"_id": doc_id}, {"$set": {prefix: value}}, upsert=True)
            return
        if not isinstance(value, dict):
            raise ValueError("A record can only be set to a mapping")
        self.db[coll].replace_one({"_id": doc_id}, value, upsert=True)

    @_translate_errors
    def update(self, path, fields):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None:
            for key, value in fields.items():
                self.set(f"{coll}/{key}", value)
            return
        to_set, to_unset = {}, {}
        for key, value in fields.items():
            dotted = f"{prefix}.{key}" if prefix else key
            if value is None:
                to_unset[dotted] = ""
            else:
                to_set[dotted] = value
        ops = {}
        if to_set:
            ops["$set"] = to_set
        if to_unset:
            ops["$unset"] = to_unset
        if ops:
            self.db[coll].update_one({"_id": doc_id}, ops, upsert=True)

    @_translate_errors
    def remove(self, path):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None:
            self.db[coll].delete_many({})
        elif prefix:
            self.db[coll].update_one({"_id": doc_id}, {"$unset": {prefix: ""}})
        else:
            self.db[coll].delete_one({"_id": doc_id})

    @_translate_errors
    def adjust(self, path, field, delta, require_at_least=None):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None:
            raise ValueError("adjust needs a record path, not a collection")
        dotted = f"{prefix}.{field}" if prefix else field
        query: Dict[str, Any] = {"_id": doc_id}
        if require_at_least is not None:
            query[dotted] = {"$gte": require_at_least}
        doc = self.db[coll].find_one_and_update(
            query, {"$inc": {dotted: delta}}, return_document=ReturnDocument.AFTER
        )
        if doc is None:
            return None
        return _dig(doc, dotted)

    @_translate_errors
    def update_if(self, path, expect, fields):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None:
            raise ValueError("update_if needs a record path, not a collection")

        def dotted(key):
            return f"{prefix}.{key}" if prefix else key

        query: Dict[str, Any] = {"_id": doc_id}
        query.update({dotted(k): v for k, v in expect.items()})
        to_set = {dotted(k): v for k, v in fields.items() if v is not None}
        to_unset = {dotted(k): "" for k, v in fields.items() if v is None}
        ops = {}
        if to_set:
            ops["$set"] = to_set
        if to_unset:
            ops["$unset"] = to_unset
        if not ops:
            return self.db[coll].count_documents(query, limit=1) > 0
        return self.db[coll].find_one_and_update(query, ops) is not None

    @_translate_errors
    def compare_and_set(self, path, expected, value):
        coll, doc_id, prefix = self.locate(path)
        if doc_id is None or not prefix:
            raise ValueError("compare_and_set needs a field path")
        query = {"_id": doc_id, prefix: expected if expected is not None else {"$exists": False}}
        if value is None:
            return self.db[coll].find_one_and_update(query, {"$unset": {prefix: ""}}) is not None
        try:
            doc = self.db[coll].find_one_and_update(query, {"$set": {prefix: value}}, upsert=expected is None)
        except DuplicateKeyError:
            # the document exists and the field already holds something else
            return False
        return doc is not None or expected is None

    @_translate_errors
    def ping(self):
        self.db.command("ping")
        return {
            "backend": self.backend,
            "name": self.db.name,
            "collections": self.db.list_collection_names()[:10],
        }


def connect(url: str = config.DATABASE_URL, name: str = config.DATABASE_NAME) -> TreeStore:
    if url.startswith("memory://"):
        return MemoryTreeStore()
    if url.startswith(("mongodb://", "mongodb+srv://")):
        logger.info("Using MongoDB store %s", name)
        return MongoTreeStore.from_url(url, name)
    raise ValueError(f"Unsupported DATABASE_URL scheme: {url}")


db = connect()


def get_store() -> TreeStore:
    return db
