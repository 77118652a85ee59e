"""Option normalization for the Redis session store.

Accepts the flat option mapping callers hand to the store (camelCase keys
as well as snake_case attribute names) and resolves it into a single
validated ``StoreOptions`` model:

- credential aliases: ``password``, then ``auth_pass``, then ``pass``
- socket path aliases: ``path``, then a string-valued ``socket``
- ``keyPrefix`` defaults to ``""`` and ``dataType`` to ``"string"``

Unrecognized keys are kept as model extras and forwarded verbatim to the
client constructor by the topology layer.

Example:
    options = normalize_options({"keyPrefix": "sess:", "pass": "secret"})
    assert options.password == "secret"
"""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

STRING_DATA_TYPE = "string"
NATIVE_DOCUMENT_DATA_TYPE = "ReJSON"

# Keys older configurations carry that have no meaning for redis-py clients
_IGNORED_LEGACY_KEYS = ("lazyConnect", "nodes")


def _first_non_empty(*values: Any) -> Any:
    """Return the first value that is neither None nor empty."""
    for value in values:
        if value:
            return value
    return None


class StoreOptions(BaseModel):
    """Resolved session store options.

    Every recognized key is available both under its camelCase alias (as
    used in configuration mappings) and its snake_case attribute name.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",  # Passthrough fields for the client constructor
        arbitrary_types_allowed=True,
    )

    # Pre-built client handling
    client: Any = None
    duplicate: bool = False

    # Key namespace and payload encoding
    db: int | None = None
    key_prefix: str = Field(default="", alias="keyPrefix")
    data_type: str = Field(default=STRING_DATA_TYPE, alias="dataType")
    serialize: Any = None
    unserialize: Any = None

    # Credentials and socket
    username: str | None = None
    password: str | None = None
    path: str | None = None
    socket: dict[str, Any] | None = None
    url: str | None = None
    redis_url: str | None = Field(default=None, alias="redisUrl")

    # Topology flags
    is_redis_single: bool = Field(default=False, alias="isRedisSingle")
    is_redis_replset: bool = Field(default=False, alias="isRedisReplset")
    is_redis_cluster: bool = Field(default=False, alias="isRedisCluster")

    # Sentinel-backed replica set
    name: str = "mymaster"
    role: Literal["master", "replica", "slave"] = "master"
    sentinel_root_nodes: list[Any] | None = Field(default=None, alias="sentinelRootNodes")
    sentinel_client_options: dict[str, Any] | None = Field(
        default=None, alias="sentinelClientOptions"
    )
    node_client_options: dict[str, Any] | None = Field(default=None, alias="nodeClientOptions")

    # Cluster
    cluster_options: dict[str, Any] | None = Field(default=None, alias="clusterOptions")
    root_nodes: list[Any] | None = Field(default=None, alias="rootNodes")
    defaults: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def resolve_aliases(cls, data: Any) -> Any:
        """Fold backward-compatible aliases into their primary fields."""
        if not isinstance(data, Mapping):
            return data

        data = dict(data)

        data["password"] = _first_non_empty(
            data.pop("password", None),
            data.pop("auth_pass", None),
            data.pop("pass", None),
        )

        legacy_socket_path = None
        if isinstance(data.get("socket"), str):
            legacy_socket_path = data.pop("socket")
        data["path"] = _first_non_empty(data.get("path"), legacy_socket_path)

        if data.get("db") is None and "database" in data:
            data["db"] = data.pop("database")

        if "isRedisReplSet" in data:
            replset = data.pop("isRedisReplSet")
            data.setdefault("isRedisReplset", replset)

        for key in _IGNORED_LEGACY_KEYS:
            if key in data:
                logger.debug("Ignoring legacy option", extra={"option": key})
                del data[key]

        return data

    @field_validator("key_prefix", mode="before")
    @classmethod
    def default_key_prefix(cls, v: Any) -> Any:
        """Treat a null prefix as no prefix."""
        return v or ""

    @field_validator("data_type", mode="before")
    @classmethod
    def default_data_type(cls, v: Any) -> Any:
        """Treat a null data type as plain strings."""
        return v or STRING_DATA_TYPE

    @property
    def passthrough(self) -> dict[str, Any]:
        """Unrecognized options, forwarded verbatim to the client constructor."""
        return dict(self.model_extra or {})

    @property
    def native_document_requested(self) -> bool:
        """Whether the caller asked for native-document (RedisJSON) storage."""
        return self.data_type == NATIVE_DOCUMENT_DATA_TYPE


def normalize_options(
    options: "Mapping[str, Any] | StoreOptions | None" = None, **overrides: Any
) -> StoreOptions:
    """Resolve caller options into a ``StoreOptions`` instance.

    The caller's mapping is never mutated.

    Args:
        options: Option mapping, an existing StoreOptions, or None
        **overrides: Extra options applied on top of ``options``

    Returns:
        Validated StoreOptions

    Raises:
        pydantic.ValidationError: If a recognized option has the wrong type
    """
    if isinstance(options, StoreOptions):
        if not overrides:
            return options
        data: dict[str, Any] = {
            name: getattr(options, name) for name in StoreOptions.model_fields
        }
        data.update(options.passthrough)
    else:
        data = dict(options or {})

    data.update(overrides)
    return StoreOptions.model_validate(data)


__all__ = [
    "NATIVE_DOCUMENT_DATA_TYPE",
    "STRING_DATA_TYPE",
    "StoreOptions",
    "normalize_options",
]
