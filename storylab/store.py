"""Document store — the collection/doc interface the services persist through.

Mirrors the shape of a hosted document database (``collection(path).doc(id)``)
so a real backend can be dropped in. The in-memory implementation is what the
server and tests run against.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class DocumentRef(ABC):
    def __init__(self, path: str, doc_id: str):
        self.path = path
        self.id = doc_id

    @abstractmethod
    def get(self) -> dict | None:
        """Return a copy of the document, or None when it does not exist."""

    @abstractmethod
    def set(self, data: dict, merge: bool = False):
        """Create or replace the document. With merge, nested dicts are merged."""

    @abstractmethod
    def update(self, data: dict):
        """Patch an existing document in one write. Dotted keys address nested fields."""

    @abstractmethod
    def delete(self):
        """Remove the document if present."""

    @property
    def exists(self) -> bool:
        return self.get() is not None


class CollectionRef(ABC):
    def __init__(self, path: str):
        self.path = path

    @abstractmethod
    def doc(self, doc_id: str) -> DocumentRef:
        ...

    @abstractmethod
    def stream(self) -> Iterator[tuple[str, dict]]:
        """Yield (doc_id, data) for every document in the collection."""

    def where(self, field_name: str, value: Any) -> list[tuple[str, dict]]:
        return [(doc_id, data) for doc_id, data in self.stream() if data.get(field_name) == value]


class DocumentStore(ABC):
    @abstractmethod
    def collection(self, path: str) -> CollectionRef:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _deep_merge(base: dict, patch: dict) -> dict:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _set_path(doc: dict, dotted: str, value: Any):
    parts = dotted.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = copy.deepcopy(value)


class InMemoryDocumentRef(DocumentRef):
    def __init__(self, store: InMemoryDocumentStore, path: str, doc_id: str):
        super().__init__(path, doc_id)
        self._store = store

    def get(self) -> dict | None:
        with self._store._lock:
            doc = self._store._collections.get(self.path, {}).get(self.id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, data: dict, merge: bool = False):
        with self._store._lock:
            docs = self._store._collections.setdefault(self.path, {})
            if merge and self.id in docs:
                _deep_merge(docs[self.id], data)
            else:
                docs[self.id] = copy.deepcopy(data)

    def update(self, data: dict):
        with self._store._lock:
            docs = self._store._collections.get(self.path, {})
            if self.id not in docs:
                raise KeyError(f"Document {self.path}/{self.id} does not exist")
            doc = docs[self.id]
            for key, value in data.items():
                _set_path(doc, key, value)

    def delete(self):
        with self._store._lock:
            self._store._collections.get(self.path, {}).pop(self.id, None)


class InMemoryCollectionRef(CollectionRef):
    def __init__(self, store: InMemoryDocumentStore, path: str):
        super().__init__(path)
        self._store = store

    def doc(self, doc_id: str) -> InMemoryDocumentRef:
        return InMemoryDocumentRef(self._store, self.path, doc_id)

    def stream(self) -> Iterator[tuple[str, dict]]:
        with self._store._lock:
            snapshot = copy.deepcopy(self._store._collections.get(self.path, {}))
        yield from snapshot.items()


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-of-dicts store. Every write holds one lock."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    def collection(self, path: str) -> InMemoryCollectionRef:
        return InMemoryCollectionRef(self, path.strip("/"))

    def clear(self):
        with self._lock:
            self._collections.clear()
        logger.debug("In-memory document store cleared")
