from .gateway import (
    KEY_CHECKOUT_RECORD,
    KEY_LAST_PAYMENT_SUCCESS,
    KEY_LAST_REFERENCE,
    KEY_PAYMENT_ORDER_ID,
    KEY_PAYMENT_REFERENCE,
    KEY_PAYMENT_SUCCESS,
    FallbackStore,
)
from .providers import FirestoreProvider, MemoryProvider, RedisSessionProvider, StorageProvider
from .settings import StorageSettings

__all__ = [
    "FallbackStore",
    "FirestoreProvider",
    "KEY_CHECKOUT_RECORD",
    "KEY_LAST_PAYMENT_SUCCESS",
    "KEY_LAST_REFERENCE",
    "KEY_PAYMENT_ORDER_ID",
    "KEY_PAYMENT_REFERENCE",
    "KEY_PAYMENT_SUCCESS",
    "MemoryProvider",
    "RedisSessionProvider",
    "StorageProvider",
    "StorageSettings",
]
