"""redis-session - Redis session storage adapter.

Stores web sessions in Redis behind one get/set/ttl/destroy interface,
whether Redis runs as a single node, a sentinel-guarded replica set or a
cluster. Values are JSON-encoded by default, or kept as RedisJSON
documents when the server supports it.
"""

__version__ = "0.1.0"
__author__ = "redis-session Contributors"

from redis_session.config import StoreSettings, get_settings, load_settings_from_file, set_settings
from redis_session.exceptions import (
    SessionStoreError,
    StoreInitializationError,
    StoreNotInitializedError,
)
from redis_session.options import StoreOptions, normalize_options
from redis_session.serialization import SerializationCodec
from redis_session.store import RedisStore, SessionStore, create_store
from redis_session.topology import ClientKind

__all__ = [
    "ClientKind",
    "RedisStore",
    "SerializationCodec",
    "SessionStore",
    "SessionStoreError",
    "StoreInitializationError",
    "StoreNotInitializedError",
    "StoreOptions",
    "StoreSettings",
    "__version__",
    "create_store",
    "get_settings",
    "load_settings_from_file",
    "normalize_options",
    "set_settings",
]
