"""
Redis-backed document store with connection pooling, retry logic and
pub/sub change subscriptions.
"""
import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
)

from cartsync.atomic_scripts import AtomicScripts
from cartsync.config import Config
from cartsync.document_store import (
    ChangeEvent,
    DocumentStore,
    MemoryDocumentStore,
    Subscription,
    child_id,
    is_pattern,
    merge_documents,
)
from cartsync.exceptions import DocumentStoreError

logger = logging.getLogger(__name__)


class RedisSubscription(Subscription):
    """Subscription fed by a Redis pub/sub connection"""

    def __init__(self, path: str, pubsub, on_close: Callable[[Subscription], Awaitable[None]]):
        super().__init__(path, on_close=on_close)
        self.pubsub = pubsub
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read())

    async def _read(self) -> None:
        try:
            async for message in self.pubsub.listen():
                if message["type"] not in ("message", "pmessage"):
                    continue
                try:
                    payload = json.loads(message["data"])
                    event = ChangeEvent(payload["path"], payload.get("data"))
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping malformed change event on {self.path}: {e!r}")
                    continue
                self.push(event)
        except asyncio.CancelledError:
            raise
        except RedisError as e:
            logger.error(f"Subscription to {self.path} lost: {e}")
            await self.close()

    async def release(self) -> None:
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        try:
            await self.pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing pub/sub for {self.path}: {e}")


class RedisDocumentStore(DocumentStore):
    """Document store keeping each document as a JSON string"""

    def __init__(
        self,
        url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None
    ):
        self.key_prefix = key_prefix or Config.DOCUMENT_KEY_PREFIX
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        self.scripts = AtomicScripts(self)
        self._subscriptions: List[RedisSubscription] = []
        if client is None:
            self._connect(url or Config.redis_url())

    def _connect(self, url: str) -> None:
        """Initialize Redis connection pool; connections open lazily"""
        options = {}
        if url.startswith("rediss://"):
            # ElastiCache uses self-signed certs
            options["ssl_cert_reqs"] = None

        self.pool = redis.ConnectionPool.from_url(
            url,
            max_connections=Config.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
            decode_responses=True,
            **options
        )
        self.client = redis.Redis(connection_pool=self.pool)

    def _doc_key(self, path: str) -> str:
        return f"{self.key_prefix}:{path}"

    def _channel(self, path: str) -> str:
        return f"{self.key_prefix}-changes:{path}"

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        max_retries: Optional[int] = None,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute coroutine function with exponential backoff retry.

        Args:
            func: Coroutine function to execute
            max_retries: Maximum number of attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            DocumentStoreError: If all retries fail or the error is not retryable
        """
        max_retries = max_retries or Config.REDIS_MAX_RETRIES
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return await func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise DocumentStoreError(
                        f"Redis operation failed after {max_retries} retries: {e}"
                    ) from e

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                await asyncio.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

            except RedisError as e:
                # Non-retryable errors
                raise DocumentStoreError(f"Redis error: {e}") from e

    async def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Execute Lua script"""
        async def _eval():
            return await self.client.eval(script, num_keys, *keys_and_args)
        return await self._retry_with_backoff(_eval)

    async def get(self, path: str) -> Optional[dict]:
        async def _get():
            return await self.client.get(self._doc_key(path))

        raw = await self._retry_with_backoff(_get)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise DocumentStoreError(f"Corrupt document at {path}: {e}") from e

    async def set(self, path: str, value: dict, merge: bool = False) -> None:
        if merge:
            value = merge_documents(await self.get(path), value)
        document = json.dumps(value)
        event = json.dumps({"path": path, "data": value})
        await self.scripts.set_document(self._doc_key(path), self._channel(path), document, event)

    async def delete(self, path: str) -> bool:
        event = json.dumps({"path": path, "data": None})
        deleted = await self.scripts.delete_document(self._doc_key(path), self._channel(path), event)
        return bool(deleted)

    async def list_documents(self, collection: str) -> Dict[str, dict]:
        key_prefix = f"{self.key_prefix}:"

        async def _scan():
            keys = sorted([key async for key in self.client.scan_iter(match=self._doc_key(f"{collection}/*"))])
            keys = [key for key in keys if child_id(collection, key[len(key_prefix):]) is not None]
            values = await self.client.mget(keys) if keys else []
            return list(zip(keys, values))

        documents = {}
        for key, raw in await self._retry_with_backoff(_scan):
            if raw is None:
                # deleted between SCAN and MGET
                continue
            try:
                documents[child_id(collection, key[len(key_prefix):])] = json.loads(raw)
            except ValueError as e:
                logger.warning(f"Skipping corrupt document {key}: {e}")
        return documents

    async def subscribe(self, path: str) -> Subscription:
        pubsub = self.client.pubsub()
        subscription = RedisSubscription(path, pubsub, on_close=self._unsubscribe)
        try:
            if is_pattern(path):
                await pubsub.psubscribe(self._channel(path))
            else:
                await pubsub.subscribe(self._channel(path))
                # changes published from here on are buffered by the pub/sub
                # connection and delivered after the snapshot
                subscription.push(ChangeEvent(path, await self.get(path)))
        except RedisError as e:
            await pubsub.aclose()
            raise DocumentStoreError(f"Failed to subscribe to {path}: {e}") from e
        except DocumentStoreError:
            await pubsub.aclose()
            raise

        subscription.start()
        self._subscriptions.append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        await subscription.release()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close subscriptions and the connection pool"""
        for subscription in list(self._subscriptions):
            await subscription.close()
        if self.client is not None:
            await self.client.aclose()
        if self.pool is not None:
            await self.pool.disconnect()


# Global document store instance
_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get or create the document store configured for this process"""
    global _document_store
    if _document_store is None:
        if Config.DOCUMENT_STORE_BACKEND == "memory":
            _document_store = MemoryDocumentStore()
        else:
            _document_store = RedisDocumentStore()
    return _document_store
