"""
Remote document store interface, live subscriptions and an in-memory backend.

Documents are JSON-compatible dicts addressed by slash-separated paths such as
``users/{uid}/cart/items`` or ``items/{itemId}``.
"""
import asyncio
import copy
import fnmatch
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ChangeEvent:
    """A document changed; ``data`` is None when it was deleted"""
    path: str
    data: Optional[Dict[str, Any]]

    @property
    def deleted(self) -> bool:
        return self.data is None


def is_pattern(path: str) -> bool:
    return "*" in path


def matches(subscription_path: str, path: str) -> bool:
    if is_pattern(subscription_path):
        return fnmatch.fnmatchcase(path, subscription_path)
    return subscription_path == path


def child_id(collection: str, path: str) -> Optional[str]:
    """Document id of ``path`` if it sits directly under ``collection``"""
    prefix = f"{collection}/"
    if not path.startswith(prefix):
        return None
    doc_id = path[len(prefix):]
    if not doc_id or "/" in doc_id:
        return None
    return doc_id


def merge_documents(existing: Optional[dict], update: dict) -> dict:
    """Shallow merge, like a merge-set on a document database"""
    merged = dict(existing or {})
    merged.update(update)
    return merged


class Subscription:
    """
    Live feed of change events for a document path or collection pattern.

    Iterate with ``async for``; the feed is unbounded until ``close()`` is
    called. Events that arrive after close are dropped.
    """

    def __init__(self, path: str, on_close: Optional[Callable[["Subscription"], Awaitable[None]]] = None):
        self.path = path
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is _CLOSED or self._closed:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            await self._on_close(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class DocumentStore(ABC):
    """Keyed document storage with change subscriptions"""

    @abstractmethod
    async def get(self, path: str) -> Optional[dict]:
        """Return the document at ``path`` or None"""

    @abstractmethod
    async def set(self, path: str, value: dict, merge: bool = False) -> None:
        """Replace (or with ``merge`` shallow-merge) the document at ``path``"""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete the document; returns True if it existed"""

    @abstractmethod
    async def list_documents(self, collection: str) -> Dict[str, dict]:
        """Documents directly under ``collection``, keyed by document id"""

    @abstractmethod
    async def subscribe(self, path: str) -> Subscription:
        """
        Subscribe to changes.

        A plain document path yields the current snapshot first and then every
        change. A path with ``*`` (e.g. ``items/*``) yields changes only.
        """

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        """Release connections and end every open subscription"""


class MemoryDocumentStore(DocumentStore):
    """In-process document store used for development and tests"""

    def __init__(self):
        self._documents: Dict[str, dict] = {}
        self._subscriptions: List[Subscription] = []

    def _publish(self, path: str, data: Optional[dict]) -> None:
        for subscription in list(self._subscriptions):
            if matches(subscription.path, path):
                subscription.push(ChangeEvent(path, copy.deepcopy(data)))

    async def get(self, path: str) -> Optional[dict]:
        document = self._documents.get(path)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, path: str, value: dict, merge: bool = False) -> None:
        if merge:
            value = merge_documents(self._documents.get(path), value)
        self._documents[path] = copy.deepcopy(value)
        self._publish(path, value)

    async def delete(self, path: str) -> bool:
        existed = self._documents.pop(path, None) is not None
        if existed:
            self._publish(path, None)
        return existed

    async def list_documents(self, collection: str) -> Dict[str, dict]:
        documents = {}
        for path in sorted(self._documents):
            doc_id = child_id(collection, path)
            if doc_id is not None:
                documents[doc_id] = copy.deepcopy(self._documents[path])
        return documents

    async def subscribe(self, path: str) -> Subscription:
        subscription = Subscription(path, on_close=self._unsubscribe)
        self._subscriptions.append(subscription)
        if not is_pattern(path):
            subscription.push(ChangeEvent(path, await self.get(path)))
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def paths(self, prefix: str = "") -> List[str]:
        return sorted(path for path in self._documents if path.startswith(prefix))

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()
