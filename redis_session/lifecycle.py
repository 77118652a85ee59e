"""Connection lifecycle for session store clients.

Opens the client connection, tracks open/ready state, relays lifecycle
events to registered listeners and discovers the server modules once per
connection.

Events:
- connect: connection established
- ready: client answered and can take commands
- error: a connection-level failure occurred (receives the exception)
- reconnecting: a ready client lost its connection; redis-py reconnects
  on the next command
- close / end: the client was closed
- disconnect: legacy alias, fired whenever ``end`` fires

Listeners are registered explicitly (``on``/``once``), or handed over at
construction time so that none of them misses the first events.
"""

import asyncio
import inspect
import logging
import re
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from redis.asyncio import ConnectionPool
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from redis_session.exceptions import StoreInitializationError
from redis_session.observability.metrics import record_connection_event
from redis_session.topology import ClientHandle, ClientKind

logger = logging.getLogger(__name__)

CLIENT_EVENTS = ("connect", "ready", "error", "close", "reconnecting", "end")

# Events fired alongside another event for older listeners
LEGACY_EVENT_ALIASES: dict[str, tuple[str, ...]] = {"end": ("disconnect",)}

# "module:name=ReJSON,ver=20609,api=1,..." lines of INFO modules
_MODULE_LINE_PATTERN = re.compile(r"^module:name=([^,\s]+)", re.MULTILINE)

Listener = Callable[..., Any]


class EventRelay:
    """Observer registry for client lifecycle events."""

    def __init__(
        self, listeners: Mapping[str, "Listener | Iterable[Listener]"] | None = None
    ) -> None:
        """Initialize relay.

        Args:
            listeners: Optional mapping of event name to one listener or a list
        """
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}
        self._pending: set[asyncio.Future[Any]] = set()

        for event, registered in (listeners or {}).items():
            if callable(registered):
                self.on(event, registered)
            else:
                for listener in registered:
                    self.on(event, listener)

    def on(self, event: str, listener: Listener) -> Listener:
        """Register a listener for an event and return it."""
        self._listeners.setdefault(event, []).append((listener, False))
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """Register a listener removed after its first call."""
        self._listeners.setdefault(event, []).append((listener, True))
        return listener

    def off(self, event: str, listener: Listener) -> None:
        """Remove every registration of a listener for an event."""
        self._listeners[event] = [
            entry for entry in self._listeners.get(event, []) if entry[0] is not listener
        ]

    def listener_count(self, event: str) -> int:
        """Number of listeners registered for an event."""
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> None:
        """Call every listener of ``event`` with ``args``.

        Listener failures are logged and never reach the emitter. Coroutine
        listeners are scheduled on the running loop.
        """
        record_connection_event(event)
        logger.debug("redis %s", event, extra={"event": event})

        entries = self._listeners.get(event, [])
        if any(once for _, once in entries):
            self._listeners[event] = [entry for entry in entries if not entry[1]]

        for listener, _ in entries:
            try:
                result = listener(*args)
            except Exception:
                logger.exception("Listener for %s event failed", event, extra={"event": event})
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._pending.add(future)
                future.add_done_callback(self._listener_done)

        for alias in LEGACY_EVENT_ALIASES.get(event, ()):
            self.emit(alias, *args)

    def _listener_done(self, future: "asyncio.Future[Any]") -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Async event listener failed", exc_info=future.exception())


def parse_module_names(info: Any) -> frozenset[str]:
    """Extract server module names from an ``INFO modules`` reply.

    Handles the raw text reply as well as redis-py's parsed form
    (``{"modules": [{"name": ...}, ...]}``, or one such mapping per node for
    cluster clients).
    """
    if isinstance(info, bytes):
        info = info.decode("utf-8", errors="replace")

    if isinstance(info, str):
        return frozenset(_MODULE_LINE_PATTERN.findall(info))

    names: set[str] = set()
    if isinstance(info, Mapping):
        for module in info.get("modules") or []:
            if isinstance(module, Mapping) and module.get("name"):
                names.add(str(module["name"]))
        for value in info.values():
            if isinstance(value, (Mapping, str, bytes)):
                names |= parse_module_names(value)
    return frozenset(names)


class ConnectionLifecycle:
    """Opens and closes a client and tracks its state.

    State is tracked from what this store observes: redis-py pools connect
    lazily and reconnect on demand, so ``is_ready`` flips back to True on
    the first successful command after a connection failure.
    """

    def __init__(self, handle: ClientHandle, events: EventRelay, db: int | None = None) -> None:
        self.handle = handle
        self.events = events
        self.db = db

        self._open = False
        self._ready = False
        self._modules: frozenset[str] | None = None
        self._background: set[asyncio.Future[Any]] = set()

    @property
    def client(self) -> Any:
        return self.handle.client

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def status(self) -> str:
        """One of ``open``, ``ready`` or ``waiting`` (checked in that order)."""
        if self._open:
            return "open"
        if self._ready:
            return "ready"
        return "waiting"

    @property
    def connected(self) -> bool:
        return self._ready

    async def open(self) -> None:
        """Open the connection unless the caller manages the client.

        Blocks until the first round trip succeeds.

        Raises:
            StoreInitializationError: If the connection cannot be established
        """
        kind = self.handle.kind

        if self.db and kind is ClientKind.CLUSTER:
            logger.warning(
                "Ignoring db %s: Redis cluster only serves database 0",
                self.db,
                extra={"client_kind": kind.value, "db": self.db},
            )

        if not self.handle.owns_client:
            # Already connected (or connecting) under its owner
            self._open = True
            if self.db:
                self._select_db()
            return

        try:
            if kind is ClientKind.CLUSTER:
                await self.client.initialize()
            else:
                await self.client.ping()
        except RedisError as e:
            self.events.emit("error", e)
            raise StoreInitializationError(
                f"Failed to connect to Redis ({kind.value}): {e}"
            ) from e

        if self.db and kind is not ClientKind.CLUSTER:
            logger.debug("Selected db %s", self.db, extra={"db": self.db})

        self._open = True
        self.events.emit("connect")
        self._mark_ready()

    def _select_db(self) -> None:
        """Point a caller-managed client at ``db`` without waiting for it.

        New pool connections pick the db up from the connection kwargs, so
        it is re-selected on every reconnect.
        """
        pool = getattr(self.client, "connection_pool", None)
        if isinstance(pool, ConnectionPool):
            pool.connection_kwargs["db"] = self.db

        logger.debug("Selecting db %s", self.db, extra={"db": self.db})
        future = asyncio.ensure_future(self.client.execute_command("SELECT", self.db))
        self._background.add(future)
        future.add_done_callback(self._select_done)

    def _select_done(self, future: "asyncio.Future[Any]") -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                "Failed to select db %s: %s", self.db, future.exception(), extra={"db": self.db}
            )

    def _mark_ready(self) -> None:
        self._ready = True
        self.events.emit("ready")

    def _connection_lost(self, error: Exception) -> None:
        self.events.emit("error", error)
        if self._ready:
            self._ready = False
            self.events.emit("reconnecting")

    @asynccontextmanager
    async def command(self) -> AsyncIterator[None]:
        """Wrap one round trip, tracking connection loss and recovery.

        Connection-level errors are relayed as events and then re-raised.
        """
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            self._connection_lost(e)
            raise

        if self._open and not self._ready:
            self._mark_ready()

    async def discover_modules(self) -> frozenset[str]:
        """Fetch the server module names once and cache them.

        Returns:
            Names of loaded server modules (e.g. ``{"ReJSON", "search"}``)
        """
        if self._modules is not None:
            return self._modules

        async with self.command():
            info = await self.client.info("modules")

        self._modules = parse_module_names(info)
        logger.debug("Discovered server modules: %s", sorted(self._modules))
        return self._modules

    async def close(self, topology_aware: bool = True) -> None:
        """Close the client.

        Sentinel-backed clients also close their sentinel connections when
        ``topology_aware`` is set; every other client is closed directly.
        Close errors propagate after the close events are emitted.
        """
        try:
            await self.client.aclose()
            sentinel = self.handle.sentinel
            if topology_aware and self.handle.kind is ClientKind.SENTINEL and sentinel is not None:
                for sentinel_client in sentinel.sentinels:
                    await sentinel_client.aclose()
        finally:
            for future in self._background:
                future.cancel()
            self._background.clear()
            self._open = False
            self._ready = False
            self.events.emit("close")
            self.events.emit("end")


__all__ = [
    "CLIENT_EVENTS",
    "ConnectionLifecycle",
    "EventRelay",
    "LEGACY_EVENT_ALIASES",
    "Listener",
    "parse_module_names",
]
