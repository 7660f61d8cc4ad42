from __future__ import annotations

import contextlib
import logging
from typing import Any, Sequence

from payflow.common import guarded_call, log_event
from payflow.payments.types import StoredPaymentRecord, now_epoch_ms

from .helpers import deserialize_json, serialize_value, to_json
from .providers import FirestoreProvider, MemoryProvider, RedisSessionProvider, StorageProvider
from .settings import StorageSettings

KEY_PAYMENT_REFERENCE = "paystack_payment_reference"
KEY_PAYMENT_ORDER_ID = "payment_order_id"
KEY_LAST_REFERENCE = "paystack_last_reference"
KEY_PAYMENT_SUCCESS = "paymentSuccess"
KEY_LAST_PAYMENT_SUCCESS = "lastPaymentSuccess"
KEY_CHECKOUT_RECORD = "paystack_checkout_record"

IN_FLIGHT_KEYS = (
    KEY_PAYMENT_REFERENCE,
    KEY_PAYMENT_ORDER_ID,
    KEY_LAST_REFERENCE,
    KEY_CHECKOUT_RECORD,
)


class FallbackStore:
    """Ordered chain of storage tiers that never raises to its callers.

    Every call walks the tiers in priority order; nothing is remembered about
    which tier answered last because availability can change between calls.
    """

    def __init__(
        self,
        providers: Sequence[StorageProvider],
        logger: logging.Logger,
    ) -> None:
        if not providers:
            raise ValueError("FallbackStore needs at least one storage provider.")
        self._providers = tuple(providers)
        self._logger = logger

    @classmethod
    def from_settings(cls, settings: StorageSettings, logger: logging.Logger) -> "FallbackStore":
        return cls(
            [
                RedisSessionProvider(settings, logger),
                FirestoreProvider(settings, logger),
                MemoryProvider(),
            ],
            logger,
        )

    @property
    def tiers(self) -> tuple[str, ...]:
        return tuple(provider.name for provider in self._providers)

    async def connect(self) -> None:
        for provider in self._providers:
            connect = getattr(provider, "connect", None)
            if connect is not None:
                await connect()

    async def close(self) -> None:
        for provider in self._providers:
            close = getattr(provider, "close", None)
            if close is not None:
                with contextlib.suppress(Exception):
                    await close()

    async def set(self, key: str, value: Any) -> str | None:
        """Write to the first tier that accepts the value and return its name."""
        raw = serialize_value(value)
        for provider in self._providers:
            accepted = await guarded_call(
                lambda: provider.try_set(key, raw),
                logger=self._logger,
                event="storage_tier_write_failed",
                message="Storage tier raised on write",
                default=False,
                tier=provider.name,
                key=key,
            )
            if accepted:
                return provider.name

        log_event(
            self._logger,
            level="error",
            event="storage_all_tiers_failed",
            message="No storage tier accepted the write",
            key=key,
        )
        return None

    async def get(self, key: str) -> str | None:
        for provider in self._providers:
            value = await guarded_call(
                lambda: provider.try_get(key),
                logger=self._logger,
                event="storage_tier_read_failed",
                message="Storage tier raised on read",
                tier=provider.name,
                key=key,
            )
            if value is not None:
                return value
        return None

    async def remove(self, key: str) -> None:
        for provider in self._providers:
            await guarded_call(
                lambda: provider.try_remove(key),
                logger=self._logger,
                event="storage_tier_remove_failed",
                message="Storage tier raised on remove",
                tier=provider.name,
                key=key,
            )

    async def set_json(self, key: str, value: Any) -> str | None:
        return await self.set(key, to_json(value))

    async def get_json(self, key: str) -> Any:
        return deserialize_json(await self.get(key))

    async def save_checkout(self, record: StoredPaymentRecord) -> str | None:
        """Persist the checkout snapshot and in-flight keys once per reference.

        Returns the tier that took the snapshot, or None when it already exists.
        """
        existing = StoredPaymentRecord.from_dict(await self.get_json(KEY_CHECKOUT_RECORD))
        if existing is not None and existing.reference == record.reference:
            log_event(
                self._logger,
                level="info",
                event="checkout_snapshot_exists",
                message="Checkout snapshot already stored for this reference",
                reference=record.reference,
            )
            return None

        stored_in = await self.set_json(KEY_CHECKOUT_RECORD, record.to_dict())
        await self.set(KEY_PAYMENT_REFERENCE, record.reference)
        await self.set(KEY_LAST_REFERENCE, record.reference)
        if record.order_id:
            await self.set(KEY_PAYMENT_ORDER_ID, record.order_id)
        return stored_in

    async def load_checkout(self) -> StoredPaymentRecord | None:
        return StoredPaymentRecord.from_dict(await self.get_json(KEY_CHECKOUT_RECORD))

    async def stored_reference(self) -> str | None:
        for key in (KEY_PAYMENT_REFERENCE, KEY_LAST_REFERENCE):
            value = await self.get(key)
            if value:
                return value
        record = await self.load_checkout()
        return record.reference if record is not None else None

    async def load_success_snapshots(self) -> list[tuple[str, dict[str, Any]]]:
        snapshots: list[tuple[str, dict[str, Any]]] = []
        for key in (KEY_PAYMENT_SUCCESS, KEY_LAST_PAYMENT_SUCCESS):
            snapshot = await self.get_json(key)
            if isinstance(snapshot, dict):
                snapshots.append((key, snapshot))
        return snapshots

    async def record_success(self, reference: str, payload: dict[str, Any]) -> None:
        snapshot = {"reference": reference, "timestamp": now_epoch_ms(), **payload}
        await self.set_json(KEY_PAYMENT_SUCCESS, snapshot)
        await self.set_json(KEY_LAST_PAYMENT_SUCCESS, snapshot)

    async def clear_in_flight(self) -> None:
        for key in IN_FLIGHT_KEYS:
            await self.remove(key)

    async def clear_all(self) -> None:
        await self.clear_in_flight()
        await self.remove(KEY_PAYMENT_SUCCESS)
        await self.remove(KEY_LAST_PAYMENT_SUCCESS)
