"""Redis session store.

Presents one get/set/ttl/destroy interface over a standalone Redis node, a
sentinel-guarded replica set, a Redis cluster, or a client built by the
caller. Session values are JSON-encoded strings unless native-document
mode (RedisJSON) is requested and the server has the module loaded.

Example:
    store = RedisStore(
        {
            "url": "redis://localhost:6379",
            "keyPrefix": "sess:",
        },
        listeners={"error": lambda e: logger.error("redis error: %s", e)},
    )
    await store.init()

    await store.set("abc", {"user_id": "123"}, ttl=86400)
    data = await store.get("abc")
    remaining = await store.ttl("abc")
    await store.destroy("abc")

    await store.quit()
"""

import logging
import math
import warnings
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from redis.exceptions import RedisError

from redis_session.exceptions import StoreInitializationError, StoreNotInitializedError
from redis_session.lifecycle import ConnectionLifecycle, EventRelay, Listener
from redis_session.observability.metrics import (
    record_operation,
    session_operation_duration_seconds,
)
from redis_session.options import NATIVE_DOCUMENT_DATA_TYPE, StoreOptions, normalize_options
from redis_session.serialization import SerializationCodec
from redis_session.topology import ClientHandle, ClientKind, initialize

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Abstract base class for session storage backends."""

    @abstractmethod
    async def init(self) -> "SessionStore":
        """Connect the store. Must be called before any other method."""

    @abstractmethod
    async def quit(self) -> None:
        """Close the store connection."""

    @abstractmethod
    async def get(self, sid: str) -> Any:
        """Retrieve a session value.

        Args:
            sid: Session identifier (without prefix)

        Returns:
            Session value, or None if missing or undecodable
        """

    @abstractmethod
    async def set(self, sid: str, value: Any, ttl: float | None = None) -> None:
        """Store a session value.

        Args:
            sid: Session identifier (without prefix)
            value: Session value
            ttl: Optional lifetime in seconds (rounded up)
        """

    @abstractmethod
    async def ttl(self, sid: str) -> int:
        """Remaining lifetime in seconds (-1 no expiry, -2 missing)."""

    @abstractmethod
    async def destroy(self, sid: str) -> int:
        """Delete a session, returning the number of keys removed."""


class RedisStore(SessionStore):
    """Redis-backed session store.

    Every operation round-trips to Redis; nothing is cached in process
    except the server module list. Command errors from the client are not
    wrapped and reach the caller unchanged.

    Native-document writes with a TTL are two commands (``JSON.SET`` then
    ``EXPIRE``) and are not atomic: a failure between them leaves the
    document without an expiry.
    """

    def __init__(
        self,
        options: "Mapping[str, Any] | StoreOptions | None" = None,
        *,
        listeners: Mapping[str, "Listener | Iterable[Listener]"] | None = None,
        **kwargs: Any,
    ) -> None:
        """Create an unconnected store.

        Args:
            options: Store options mapping (see StoreOptions)
            listeners: Lifecycle event listeners registered before connecting
            **kwargs: Options given as keyword arguments
        """
        self.events = EventRelay(listeners)
        self._handle: ClientHandle | None = None
        self._lifecycle: ConnectionLifecycle | None = None
        self.use_native_document: bool | None = None
        self._configure(normalize_options(options, **kwargs))

    def _configure(self, options: StoreOptions) -> None:
        self.options = options
        self.key_prefix = options.key_prefix
        self.data_type = options.data_type
        self.codec = SerializationCodec(options.serialize, options.unserialize)

    # ========================================
    # Event registration
    # ========================================

    def on(self, event: str, listener: Listener) -> Listener:
        """Register a lifecycle event listener."""
        return self.events.on(event, listener)

    def once(self, event: str, listener: Listener) -> Listener:
        """Register a lifecycle event listener called at most once."""
        return self.events.once(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a lifecycle event listener."""
        self.events.off(event, listener)

    # ========================================
    # Lifecycle
    # ========================================

    async def init(
        self, options: "Mapping[str, Any] | StoreOptions | None" = None, **kwargs: Any
    ) -> "RedisStore":
        """Build the client, connect it and discover server modules.

        Args:
            options: Replacement options (defaults to the constructor's)
            **kwargs: Extra options applied on top

        Calling init() on a connected store closes the client it built first;
        a caller-managed client is left open and reused.
        On failure the store is left unconnected and any client it built is
        closed again.

        Returns:
            This store, connected

        Raises:
            StoreInitializationError: If the client cannot be built or connected
        """
        if self._lifecycle is not None:
            logger.info(
                "Re-initializing session store",
                extra={"client_kind": self._lifecycle.handle.kind.value},
            )
            if self._lifecycle.handle.owns_client:
                await self.quit()
            else:
                # Caller-managed client is reused, not closed
                self._lifecycle = None
                self._handle = None
        self.use_native_document = None

        if options is not None or kwargs:
            self._configure(
                normalize_options(options if options is not None else self.options, **kwargs)
            )

        try:
            handle = initialize(self.options)
        except RedisError as e:
            raise StoreInitializationError(f"Failed to create Redis client: {e}") from e

        lifecycle = ConnectionLifecycle(handle, self.events, db=self.options.db)
        try:
            await lifecycle.open()
        except StoreInitializationError:
            await self._discard(lifecycle)
            raise

        try:
            modules = await lifecycle.discover_modules()
        except RedisError as e:
            await self._discard(lifecycle)
            raise StoreInitializationError(f"Failed to discover Redis modules: {e}") from e

        self._handle = handle
        self._lifecycle = lifecycle

        requested = self.options.native_document_requested
        self.use_native_document = requested and NATIVE_DOCUMENT_DATA_TYPE in modules
        if requested and not self.use_native_document:
            logger.warning(
                "%s module not available, storing sessions as strings",
                NATIVE_DOCUMENT_DATA_TYPE,
                extra={"data_type": self.data_type},
            )

        logger.info(
            "Redis session store initialized",
            extra={
                "client_kind": handle.kind.value,
                "data_type": NATIVE_DOCUMENT_DATA_TYPE if self.use_native_document else "string",
            },
        )
        return self

    async def _discard(self, lifecycle: ConnectionLifecycle) -> None:
        """Close a client built by a failed init(); caller-managed clients are left open."""
        if not lifecycle.handle.owns_client:
            return
        try:
            await lifecycle.close()
        except RedisError as e:
            logger.warning(
                "Failed to close Redis client after failed init: %s",
                e,
                extra={"client_kind": lifecycle.handle.kind.value},
            )

    async def quit(self) -> None:
        """Close the connection.

        Cluster and sentinel clients are closed topology-aware (sentinel
        connections included); other clients are closed directly.
        """
        lifecycle = self._require_lifecycle()
        logger.debug("Quitting redis client", extra={"client_kind": lifecycle.handle.kind.value})
        topology_aware = lifecycle.handle.kind in (ClientKind.CLUSTER, ClientKind.SENTINEL)
        try:
            await lifecycle.close(topology_aware=topology_aware)
        finally:
            self._lifecycle = None
            self._handle = None

    async def end(self) -> None:
        """Close the client directly, whatever its topology.

        Deprecated: use quit(). Sentinel connections are left open.
        """
        warnings.warn("RedisStore.end() is deprecated, use quit()", DeprecationWarning, stacklevel=2)
        lifecycle = self._require_lifecycle()
        logger.debug("Quitting redis client", extra={"client_kind": lifecycle.handle.kind.value})
        try:
            await lifecycle.close(topology_aware=False)
        finally:
            self._lifecycle = None
            self._handle = None

    async def __aenter__(self) -> "RedisStore":
        if self._lifecycle is None:
            await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._lifecycle is not None:
            await self.quit()

    def _require_lifecycle(self) -> ConnectionLifecycle:
        if self._lifecycle is None:
            raise StoreNotInitializedError("Session store not initialized. Call init() first.")
        return self._lifecycle

    # ========================================
    # Connection state
    # ========================================

    @property
    def client(self) -> Any:
        """The underlying redis.asyncio client, or None before init()."""
        return self._handle.client if self._handle else None

    @property
    def client_kind(self) -> ClientKind | None:
        return self._handle.kind if self._handle else None

    @property
    def is_open(self) -> bool:
        return self._lifecycle.is_open if self._lifecycle else False

    @property
    def is_ready(self) -> bool:
        return self._lifecycle.is_ready if self._lifecycle else False

    @property
    def status(self) -> str:
        """``open``, ``ready`` or ``waiting``."""
        return self._lifecycle.status if self._lifecycle else "waiting"

    @property
    def connected(self) -> bool:
        return self.is_ready

    # ========================================
    # Session operations
    # ========================================

    def _key(self, sid: str) -> str:
        return f"{self.key_prefix}{sid}"

    async def ping(self) -> str:
        """Ping the server.

        Returns:
            The string ``PONG``
        """
        lifecycle = self._require_lifecycle()
        async with lifecycle.command():
            pong = await lifecycle.client.ping()
        if pong is True:
            return "PONG"
        return pong.decode("utf-8") if isinstance(pong, bytes) else pong

    async def modules(self) -> frozenset[str]:
        """Names of the modules loaded on the server (cached)."""
        return await self._require_lifecycle().discover_modules()

    async def get(self, sid: str) -> Any:
        """Retrieve a session value.

        In native-document mode the stored document is returned as-is.

        Args:
            sid: Session identifier (without prefix)

        Returns:
            Decoded session value, or None if missing or undecodable

        Raises:
            StoreNotInitializedError: If init() has not been called
            redis.exceptions.RedisError: If the read fails
        """
        lifecycle = self._require_lifecycle()
        key = self._key(sid)
        operation = "get"

        try:
            with session_operation_duration_seconds.labels(operation=operation).time():
                async with lifecycle.command():
                    if self.use_native_document:
                        logger.debug("JSON.GET %s", key, extra={"session_key": key})
                        document = await lifecycle.client.json().get(key)
                        record_operation(operation, "miss" if document is None else "hit")
                        return document

                    logger.debug("GET %s", key, extra={"session_key": key})
                    data = await lifecycle.client.get(key)
        except RedisError:
            record_operation(operation, "error")
            raise

        if not data:
            record_operation(operation, "miss")
            return None

        record_operation(operation, "hit")
        return self.codec.unserialize(data)

    async def set(self, sid: str, value: Any, ttl: float | None = None) -> None:
        """Store a session value, optionally expiring after ``ttl`` seconds.

        Args:
            sid: Session identifier (without prefix)
            value: Session value
            ttl: Optional lifetime in seconds; fractions are rounded up

        Raises:
            StoreNotInitializedError: If init() has not been called
            redis.exceptions.RedisError: If the write fails
        """
        lifecycle = self._require_lifecycle()
        key = self._key(sid)
        operation = "set"
        native = self.use_native_document

        payload = value if native else self.codec.serialize(value)
        ttl_seconds = None
        if isinstance(ttl, (int, float)) and not isinstance(ttl, bool):
            ttl_seconds = math.ceil(ttl)

        client = lifecycle.client
        try:
            with session_operation_duration_seconds.labels(operation=operation).time():
                async with lifecycle.command():
                    if ttl_seconds:
                        if not native:
                            logger.debug(
                                "SET %s EX %s",
                                key,
                                ttl_seconds,
                                extra={"session_key": key, "ttl_seconds": ttl_seconds},
                            )
                            await client.set(key, payload, ex=ttl_seconds)
                        else:
                            logger.debug(
                                "JSON.SET %s + EXPIRE %s",
                                key,
                                ttl_seconds,
                                extra={"session_key": key, "ttl_seconds": ttl_seconds},
                            )
                            await client.json().set(key, "$", payload)
                            await client.expire(key, ttl_seconds)
                    elif native is False:
                        logger.debug("SET %s", key, extra={"session_key": key})
                        await client.set(key, payload)
                    elif native is True:
                        logger.debug("JSON.SET %s", key, extra={"session_key": key})
                        await client.json().set(key, "$", payload)
                    else:
                        logger.warning(
                            "Session %s not stored: storage mode unresolved",
                            key,
                            extra={"session_key": key, "operation": operation},
                        )
                        record_operation(operation, "dropped")
                        return
        except RedisError:
            record_operation(operation, "error")
            raise

        record_operation(operation, "success")

    async def ttl(self, sid: str) -> int:
        """Remaining lifetime of a session.

        Returns:
            Seconds remaining, -1 if the key has no expiry, -2 if it is missing
        """
        lifecycle = self._require_lifecycle()
        key = self._key(sid)
        operation = "ttl"

        try:
            with session_operation_duration_seconds.labels(operation=operation).time():
                async with lifecycle.command():
                    remaining = await lifecycle.client.ttl(key)
        except RedisError:
            record_operation(operation, "error")
            raise

        logger.debug("TTL %s = %s", key, remaining, extra={"session_key": key})
        record_operation(operation, "success")
        return remaining

    async def destroy(self, sid: str) -> int:
        """Delete a session.

        Returns:
            Number of keys removed (0 or 1)
        """
        lifecycle = self._require_lifecycle()
        key = self._key(sid)
        operation = "destroy"

        try:
            with session_operation_duration_seconds.labels(operation=operation).time():
                async with lifecycle.command():
                    logger.debug("DEL %s", key, extra={"session_key": key})
                    deleted = await lifecycle.client.delete(key)
        except RedisError:
            record_operation(operation, "error")
            raise

        record_operation(operation, "success" if deleted else "not_found")
        return deleted


async def create_store(
    options: "Mapping[str, Any] | StoreOptions | None" = None,
    *,
    listeners: Mapping[str, "Listener | Iterable[Listener]"] | None = None,
    **kwargs: Any,
) -> RedisStore:
    """Create and connect a RedisStore.

    Example:
        store = await create_store({"url": "redis://localhost:6379/0"})
    """
    store = RedisStore(options, listeners=listeners, **kwargs)
    return await store.init()


__all__ = ["RedisStore", "SessionStore", "create_store"]
