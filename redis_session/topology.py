"""Redis topology selection and client construction.

Resolves normalized ``StoreOptions`` into exactly one topology variant in a
single pass, then builds the matching ``redis.asyncio`` client:

1. Cluster        - ``isRedisCluster`` set and no pre-built client
2. Sentinel       - ``sentinelRootNodes`` plus ``isRedisReplset`` (and not cluster)
3. Standalone     - any other configuration without a pre-built client
4. Duplicate      - pre-built client with ``duplicate`` set
5. External       - pre-built client used as-is

The first match wins. Conflicting flags (cluster plus sentinel nodes, for
instance) are not rejected; they resolve by the order above. Each variant
only carries its own fields, so a client constructor never sees the hints
meant for another topology.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import unquote, urlsplit

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.asyncio.sentinel import Sentinel

from redis_session.exceptions import StoreInitializationError
from redis_session.options import StoreOptions

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379
DEFAULT_SENTINEL_PORT = 26379


class ClientKind(str, Enum):
    """Construction path that produced the client."""

    STANDALONE = "standalone"
    SENTINEL = "sentinel"
    CLUSTER = "cluster"
    DUPLICATE = "duplicate"
    EXTERNAL = "external"


@dataclass(frozen=True)
class StandaloneConfig:
    """Single Redis node, addressed by URL or by connection kwargs."""

    url: str | None = None
    connection_kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SentinelConfig:
    """Replica set discovered through a set of sentinels."""

    sentinels: list[tuple[str, int]]
    service_name: str = "mymaster"
    role: str = "master"
    sentinel_kwargs: dict[str, Any] = field(default_factory=dict)
    connection_kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClusterConfig:
    """Sharded cluster reached through its startup nodes."""

    startup_nodes: list[tuple[str, int]]
    connection_kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalClientConfig:
    """Client built by the caller, used directly or duplicated."""

    client: Any
    duplicate: bool = False
    overrides: dict[str, Any] = field(default_factory=dict)


TopologyConfig = StandaloneConfig | SentinelConfig | ClusterConfig | ExternalClientConfig


@dataclass
class ClientHandle:
    """The client driven by a store, with how it was obtained.

    Attributes:
        client: redis.asyncio client (Redis or RedisCluster)
        kind: Construction path that produced the client
        owns_client: False only when the caller's own client is used directly
        sentinel: Sentinel manager for sentinel-backed clients
    """

    client: Any
    kind: ClientKind
    owns_client: bool = True
    sentinel: Sentinel | None = None


def socket_kwargs(socket: Mapping[str, Any] | None) -> dict[str, Any]:
    """Translate a socket mapping into redis-py connection kwargs.

    Accepts redis-py names (``ssl``, ``ssl_ca_certs``, ...) unchanged and maps
    the legacy names used by older configurations (``tls``, ``ca``,
    ``rejectUnauthorized``, ``connectTimeout`` in ms, ``keepAlive``).

    Args:
        socket: Socket options mapping

    Returns:
        Connection kwargs for a redis-py client
    """
    kwargs: dict[str, Any] = {}
    for key, value in (socket or {}).items():
        if value is None:
            continue
        if key == "tls":
            kwargs["ssl"] = bool(value)
        elif key == "rejectUnauthorized":
            if not value:
                kwargs["ssl_cert_reqs"] = "none"
        elif key == "ca":
            if isinstance(value, bytes):
                kwargs["ssl_ca_data"] = value.decode("utf-8")
            elif "-----BEGIN" in str(value):
                kwargs["ssl_ca_data"] = str(value)
            else:
                kwargs["ssl_ca_certs"] = str(value)
        elif key == "connectTimeout":
            kwargs["socket_connect_timeout"] = float(value) / 1000
        elif key == "keepAlive":
            kwargs["socket_keepalive"] = bool(value)
        elif key == "reconnectStrategy":
            # redis-py reconnects on the next command; no strategy hook to map to
            continue
        elif key == "port":
            kwargs["port"] = int(value)
        else:
            kwargs[key] = value
    return kwargs


def client_options_kwargs(client_options: Mapping[str, Any] | None) -> dict[str, Any]:
    """Flatten a nested client options mapping (credentials + socket)."""
    options = dict(client_options or {})
    socket = options.pop("socket", None)
    kwargs = {key: value for key, value in options.items() if value is not None}
    kwargs.update(socket_kwargs(socket))
    return kwargs


def node_address(node: Any, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Resolve a node description into a ``(host, port)`` pair.

    Supports ``{"host": ..., "port": ...}``, ``{"socket": {...}}``,
    ``{"url": "redis://host:port"}``, ``"host:port"`` strings, URLs and
    ``(host, port)`` tuples.
    """
    if isinstance(node, Mapping):
        if "url" in node:
            return node_address(node["url"], default_port)
        if "socket" in node:
            return node_address(node["socket"], default_port)
        return str(node.get("host") or "localhost"), int(node.get("port") or default_port)

    if isinstance(node, (tuple, list)):
        host, port = node
        return str(host), int(port)

    text = str(node)
    if "://" in text:
        parsed = urlsplit(text)
        return parsed.hostname or "localhost", parsed.port or default_port

    host, _, port = text.rpartition(":")
    if not host:
        return text, default_port
    return host, int(port)


def _drop_none(kwargs: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}


def _cluster_config(options: StoreOptions) -> ClusterConfig:
    cluster_options = dict(options.cluster_options or {})
    root_nodes = (
        cluster_options.pop("rootNodes", None)
        or cluster_options.pop("root_nodes", None)
        or options.root_nodes
        or []
    )
    defaults = cluster_options.pop("defaults", None) or options.defaults

    kwargs = client_options_kwargs(defaults)
    kwargs.update(cluster_options)
    kwargs.setdefault("decode_responses", True)

    return ClusterConfig(
        startup_nodes=[node_address(node) for node in root_nodes],
        connection_kwargs=kwargs,
    )


def _sentinel_config(options: StoreOptions) -> SentinelConfig:
    node_kwargs = _drop_none({"username": options.username, "password": options.password})
    node_kwargs.update(client_options_kwargs(options.node_client_options))
    if options.db:
        node_kwargs["db"] = options.db
    node_kwargs.update(options.passthrough)
    node_kwargs.setdefault("decode_responses", True)

    return SentinelConfig(
        sentinels=[
            node_address(node, DEFAULT_SENTINEL_PORT) for node in options.sentinel_root_nodes or []
        ],
        service_name=options.name,
        role="replica" if options.role in ("replica", "slave") else "master",
        sentinel_kwargs=client_options_kwargs(options.sentinel_client_options),
        connection_kwargs=node_kwargs,
    )


def _standalone_config(options: StoreOptions) -> StandaloneConfig:
    socket = dict(options.socket or {})
    username = options.username
    password = options.password
    db = options.db

    if options.url and not options.redis_url:
        parsed = urlsplit(options.url)
        if parsed.hostname:
            socket["host"] = parsed.hostname
        if parsed.port:
            socket["port"] = parsed.port
        if parsed.scheme == "rediss":
            socket["tls"] = True
        if parsed.username:
            username = unquote(parsed.username)
        if parsed.password:
            password = unquote(parsed.password)
        path_db = parsed.path.lstrip("/")
        if db is None and path_db.isdigit():
            db = int(path_db)

    kwargs = socket_kwargs(socket)
    if options.path:
        kwargs["unix_socket_path"] = options.path
    kwargs.update(_drop_none({"username": username, "password": password}))
    if db:
        kwargs["db"] = db
    kwargs.update(options.passthrough)
    kwargs.setdefault("decode_responses", True)

    return StandaloneConfig(url=options.redis_url, connection_kwargs=kwargs)


def _duplicate_overrides(options: StoreOptions) -> dict[str, Any]:
    overrides = _drop_none({"username": options.username, "password": options.password})
    if options.db is not None:
        overrides["db"] = options.db
    overrides.update(options.passthrough)
    return overrides


def resolve_topology(options: StoreOptions) -> TopologyConfig:
    """Pick the topology variant for the given options (first match wins).

    Args:
        options: Normalized store options

    Returns:
        Exactly one of StandaloneConfig, SentinelConfig, ClusterConfig or
        ExternalClientConfig
    """
    if options.client is None:
        if options.is_redis_cluster:
            return _cluster_config(options)
        if options.sentinel_root_nodes and options.is_redis_replset:
            return _sentinel_config(options)
        return _standalone_config(options)

    return ExternalClientConfig(
        client=options.client,
        duplicate=options.duplicate,
        overrides=_duplicate_overrides(options) if options.duplicate else {},
    )


def duplicate_client(client: Any, overrides: Mapping[str, Any] | None = None) -> Any:
    """Create an independent client with the same connection settings.

    Clients exposing their own ``duplicate()`` are asked to produce the copy.
    redis-py clients get a fresh connection pool built from the original
    pool's connection kwargs, with ``overrides`` applied on top.

    Args:
        client: Client to duplicate (left untouched)
        overrides: Connection kwargs replacing the original ones

    Returns:
        New client owning its own connection pool

    Raises:
        StoreInitializationError: If the client cannot be duplicated
    """
    overrides = dict(overrides or {})

    duplicate = getattr(client, "duplicate", None)
    if callable(duplicate):
        return duplicate(**overrides)

    pool = getattr(client, "connection_pool", None)
    if not isinstance(pool, ConnectionPool):
        raise StoreInitializationError(
            f"Cannot duplicate client of type {type(client).__name__}: "
            "no connection pool to copy"
        )

    pool_kwargs = {**pool.connection_kwargs, **overrides}
    new_pool = ConnectionPool(
        connection_class=pool.connection_class,
        max_connections=pool.max_connections,
        **pool_kwargs,
    )
    return Redis(connection_pool=new_pool)


def initialize(topology: "TopologyConfig | StoreOptions") -> ClientHandle:
    """Build the client for a topology.

    Construction is lazy: no connection is opened here.

    Args:
        topology: Resolved topology variant, or options to resolve first

    Returns:
        ClientHandle wrapping the new (or supplied) client
    """
    if isinstance(topology, StoreOptions):
        topology = resolve_topology(topology)

    if isinstance(topology, ClusterConfig):
        logger.debug(
            "Initializing Redis cluster",
            extra={"client_kind": ClientKind.CLUSTER.value, "nodes": topology.startup_nodes},
        )
        client = RedisCluster(
            startup_nodes=[ClusterNode(host, port) for host, port in topology.startup_nodes],
            **topology.connection_kwargs,
        )
        return ClientHandle(client=client, kind=ClientKind.CLUSTER)

    if isinstance(topology, SentinelConfig):
        logger.debug(
            "Initializing Redis replica set with sentinels",
            extra={
                "client_kind": ClientKind.SENTINEL.value,
                "service_name": topology.service_name,
                "role": topology.role,
            },
        )
        sentinel = Sentinel(
            topology.sentinels,
            sentinel_kwargs=topology.sentinel_kwargs or None,
            **topology.connection_kwargs,
        )
        if topology.role == "replica":
            client = sentinel.slave_for(topology.service_name)
        else:
            client = sentinel.master_for(topology.service_name)
        return ClientHandle(client=client, kind=ClientKind.SENTINEL, sentinel=sentinel)

    if isinstance(topology, StandaloneConfig):
        logger.debug(
            "Initializing standalone Redis",
            extra={"client_kind": ClientKind.STANDALONE.value, "from_url": bool(topology.url)},
        )
        if topology.url:
            client = Redis.from_url(topology.url, **topology.connection_kwargs)
        else:
            client = Redis(**topology.connection_kwargs)
        return ClientHandle(client=client, kind=ClientKind.STANDALONE)

    if topology.duplicate:
        logger.debug("Duplicating provided client", extra={"overrides": sorted(topology.overrides)})
        client = duplicate_client(topology.client, topology.overrides)
        return ClientHandle(client=client, kind=ClientKind.DUPLICATE)

    logger.debug("Using provided client", extra={"client_kind": ClientKind.EXTERNAL.value})
    return ClientHandle(client=topology.client, kind=ClientKind.EXTERNAL, owns_client=False)


__all__ = [
    "ClientHandle",
    "ClientKind",
    "ClusterConfig",
    "ExternalClientConfig",
    "SentinelConfig",
    "StandaloneConfig",
    "TopologyConfig",
    "client_options_kwargs",
    "duplicate_client",
    "initialize",
    "node_address",
    "resolve_topology",
    "socket_kwargs",
]
