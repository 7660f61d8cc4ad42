from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Protocol

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from payflow.common import guarded_call, log_event

from .settings import StorageSettings


class StorageProvider(Protocol):
    name: str

    async def try_set(self, key: str, value: str) -> bool:
        ...

    async def try_get(self, key: str) -> str | None:
        ...

    async def try_remove(self, key: str) -> bool:
        ...


class RedisSessionProvider:
    """Session tier: a per-session key namespace in Redis with a TTL."""

    name = "session"

    def __init__(
        self,
        settings: StorageSettings,
        logger: logging.Logger,
        *,
        client: Redis | None = None,
    ) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = client

    def _key(self, key: str) -> str:
        return f"{self.settings.redis_key_prefix}:{self.settings.session_id}:{key}"

    async def connect(self) -> None:
        if self._redis is not None or not self.settings.redis_enabled:
            return

        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        connected = await guarded_call(
            client.ping,
            logger=self._logger,
            event="redis_unavailable",
            message="Redis is unreachable; session tier disabled",
        )
        if not connected:
            await guarded_call(
                client.aclose,
                logger=self._logger,
                event="redis_close_failed",
                message="Failed to close Redis client",
                level="debug",
            )
            return

        self._redis = client
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            tier=self.name,
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def try_set(self, key: str, value: str) -> bool:
        redis_client = self._redis
        if redis_client is None:
            return False
        result = await guarded_call(
            lambda: redis_client.set(self._key(key), value, ex=self.settings.redis_ttl_seconds),
            logger=self._logger,
            event="storage_tier_write_failed",
            message="Session tier write failed",
            default=False,
            tier=self.name,
            key=key,
        )
        return bool(result)

    async def try_get(self, key: str) -> str | None:
        redis_client = self._redis
        if redis_client is None:
            return None
        return await guarded_call(
            lambda: redis_client.get(self._key(key)),
            logger=self._logger,
            event="storage_tier_read_failed",
            message="Session tier read failed",
            tier=self.name,
            key=key,
        )

    async def try_remove(self, key: str) -> bool:
        redis_client = self._redis
        if redis_client is None:
            return False
        deleted = await guarded_call(
            lambda: redis_client.delete(self._key(key)),
            logger=self._logger,
            event="storage_tier_remove_failed",
            message="Session tier remove failed",
            tier=self.name,
            key=key,
        )
        return deleted is not None


class FirestoreProvider:
    """Persistent tier: one Firestore document per key under the session."""

    name = "persistent"

    def __init__(
        self,
        settings: StorageSettings,
        logger: logging.Logger,
        *,
        client: firestore.Client | None = None,
    ) -> None:
        self.settings = settings
        self._logger = logger
        self._firestore: firestore.Client | None = client
        self._entries_ref: Any | None = None
        if client is not None:
            self._entries_ref = self._build_entries_ref(client)

    def _build_entries_ref(self, client: firestore.Client) -> Any:
        return (
            client.collection(self.settings.firestore_sessions_collection)
            .document(self.settings.session_id)
            .collection("entries")
        )

    @staticmethod
    def _doc_id(key: str) -> str:
        normalized = key.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Storage key must not be empty.")
        return normalized

    async def connect(self) -> None:
        if self._entries_ref is not None or not self.settings.firestore_enabled:
            return

        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        client = await guarded_call(
            lambda: asyncio.to_thread(firestore.Client, project=self.settings.firestore_project_id),
            logger=self._logger,
            event="firestore_unavailable",
            message="Firestore client could not be created; persistent tier disabled",
        )
        if client is None:
            return

        self._firestore = client
        self._entries_ref = self._build_entries_ref(client)
        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            tier=self.name,
            collection=self.settings.firestore_sessions_collection,
        )

    async def close(self) -> None:
        if self._firestore is not None:
            await asyncio.to_thread(self._firestore.close)
        self._firestore = None
        self._entries_ref = None

    async def try_set(self, key: str, value: str) -> bool:
        entries_ref = self._entries_ref
        if entries_ref is None:
            return False

        payload = {
            "key": key,
            "value": value,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        async def write() -> bool:
            doc_ref = entries_ref.document(self._doc_id(key))
            await asyncio.to_thread(doc_ref.set, payload)
            return True

        result = await guarded_call(
            write,
            logger=self._logger,
            event="storage_tier_write_failed",
            message="Persistent tier write failed",
            default=False,
            tier=self.name,
            key=key,
        )
        return bool(result)

    async def try_get(self, key: str) -> str | None:
        entries_ref = self._entries_ref
        if entries_ref is None:
            return None

        async def read() -> str | None:
            doc_ref = entries_ref.document(self._doc_id(key))
            snapshot = await asyncio.to_thread(doc_ref.get)
            if not snapshot.exists:
                return None
            value = (snapshot.to_dict() or {}).get("value")
            return value if isinstance(value, str) else None

        return await guarded_call(
            read,
            logger=self._logger,
            event="storage_tier_read_failed",
            message="Persistent tier read failed",
            tier=self.name,
            key=key,
        )

    async def try_remove(self, key: str) -> bool:
        entries_ref = self._entries_ref
        if entries_ref is None:
            return False

        async def remove() -> bool:
            doc_ref = entries_ref.document(self._doc_id(key))
            await asyncio.to_thread(doc_ref.delete)
            return True

        result = await guarded_call(
            remove,
            logger=self._logger,
            event="storage_tier_remove_failed",
            message="Persistent tier remove failed",
            default=False,
            tier=self.name,
            key=key,
        )
        return bool(result)


class MemoryProvider:
    """Last-resort tier; lives only as long as the process."""

    name = "memory"

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def try_set(self, key: str, value: str) -> bool:
        self._values[key] = value
        return True

    async def try_get(self, key: str) -> str | None:
        return self._values.get(key)

    async def try_remove(self, key: str) -> bool:
        self._values.pop(key, None)
        return True
