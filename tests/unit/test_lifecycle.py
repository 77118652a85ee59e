"""Tests for connection lifecycle and event relaying."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from redis_session.exceptions import StoreInitializationError
from redis_session.lifecycle import ConnectionLifecycle, EventRelay, parse_module_names
from redis_session.topology import ClientHandle, ClientKind


class TestEventRelay:
    """Tests for EventRelay."""

    def test_on_and_emit(self) -> None:
        """Listeners receive every emitted event with its arguments."""
        relay = EventRelay()
        received = []
        relay.on("error", received.append)

        relay.emit("error", "boom")
        relay.emit("error", "again")

        assert received == ["boom", "again"]

    def test_once_fires_once(self) -> None:
        """once() listeners are removed after the first call."""
        relay = EventRelay()
        listener = MagicMock()
        relay.once("ready", listener)

        relay.emit("ready")
        relay.emit("ready")

        listener.assert_called_once_with()
        assert relay.listener_count("ready") == 0

    def test_off_removes_listener(self) -> None:
        """off() unregisters a listener."""
        relay = EventRelay()
        listener = MagicMock()
        relay.on("connect", listener)
        relay.off("connect", listener)

        relay.emit("connect")

        listener.assert_not_called()

    def test_off_unknown_event_is_noop(self) -> None:
        EventRelay().off("never", MagicMock())

    def test_constructor_listeners(self) -> None:
        """Listeners can be handed over at construction."""
        single = MagicMock()
        first, second = MagicMock(), MagicMock()
        relay = EventRelay({"ready": single, "close": [first, second]})

        assert relay.listener_count("ready") == 1
        assert relay.listener_count("close") == 2

    def test_end_also_fires_disconnect(self) -> None:
        """end also fires the legacy disconnect event."""
        relay = EventRelay()
        end_listener = MagicMock()
        disconnect_listener = MagicMock()
        relay.on("end", end_listener)
        relay.on("disconnect", disconnect_listener)

        relay.emit("end")

        end_listener.assert_called_once_with()
        disconnect_listener.assert_called_once_with()

    def test_listener_failure_does_not_propagate(self, caplog: pytest.LogCaptureFixture) -> None:
        """A failing listener is logged and the others still run."""
        relay = EventRelay()
        after = MagicMock()
        relay.on("error", MagicMock(side_effect=RuntimeError("listener bug")))
        relay.on("error", after)

        relay.emit("error", ValueError("x"))

        after.assert_called_once()
        assert "Listener for error event failed" in caplog.text

    async def test_async_listener_is_scheduled(self) -> None:
        """Coroutine listeners run on the event loop."""
        relay = EventRelay()
        called = asyncio.Event()

        async def listener() -> None:
            called.set()

        relay.on("ready", listener)
        relay.emit("ready")

        await asyncio.wait_for(called.wait(), timeout=1)


class TestParseModuleNames:
    """Tests for INFO modules parsing."""

    def test_raw_text(self) -> None:
        """Module names are read from raw INFO text."""
        info = (
            "# Modules\r\n"
            "module:name=ReJSON,ver=20609,api=1,filters=0,usedby=[],using=[],options=[]\r\n"
            "module:name=search,ver=20810,api=1\r\n"
        )
        assert parse_module_names(info) == frozenset({"ReJSON", "search"})

    def test_raw_bytes(self) -> None:
        assert parse_module_names(b"module:name=ReJSON,ver=1\n") == frozenset({"ReJSON"})

    def test_parsed_reply(self) -> None:
        """Module names are read from redis-py's parsed reply."""
        info = {"modules": [{"name": "ReJSON", "ver": 20609}, {"name": "bf", "ver": 1}]}
        assert parse_module_names(info) == frozenset({"ReJSON", "bf"})

    def test_per_node_replies(self) -> None:
        """Cluster replies keyed by node are merged."""
        info = {
            "10.0.0.1:7000": {"modules": [{"name": "ReJSON"}]},
            "10.0.0.2:7001": {"modules": [{"name": "search"}]},
        }
        assert parse_module_names(info) == frozenset({"ReJSON", "search"})

    def test_no_modules(self) -> None:
        """Replies without modules give an empty set."""
        assert parse_module_names({}) == frozenset()
        assert parse_module_names("# Modules\r\n") == frozenset()
        assert parse_module_names(None) == frozenset()


def _lifecycle(
    client: MagicMock,
    kind: ClientKind = ClientKind.STANDALONE,
    owns_client: bool = True,
    db: int | None = None,
    sentinel: MagicMock | None = None,
) -> tuple[ConnectionLifecycle, list[str]]:
    relay = EventRelay()
    seen: list[str] = []
    for event in ("connect", "ready", "error", "reconnecting", "close", "end", "disconnect"):
        relay.on(event, lambda *args, event=event: seen.append(event))
    handle = ClientHandle(client=client, kind=kind, owns_client=owns_client, sentinel=sentinel)
    return ConnectionLifecycle(handle, relay, db=db), seen


class TestOpen:
    """Tests for ConnectionLifecycle.open."""

    def test_initial_state(self, mock_client: MagicMock) -> None:
        """A new lifecycle is waiting."""
        lifecycle, _ = _lifecycle(mock_client)
        assert lifecycle.is_open is False
        assert lifecycle.is_ready is False
        assert lifecycle.status == "waiting"
        assert lifecycle.connected is False

    async def test_owned_client_is_pinged(self, mock_client: MagicMock) -> None:
        """open() pings owned clients and emits connect then ready."""
        lifecycle, seen = _lifecycle(mock_client)

        await lifecycle.open()

        mock_client.ping.assert_awaited_once()
        assert seen == ["connect", "ready"]
        assert lifecycle.is_open is True
        assert lifecycle.is_ready is True
        assert lifecycle.status == "open"
        assert lifecycle.connected is True

    async def test_cluster_is_initialized(self, mock_client: MagicMock) -> None:
        """Cluster clients are opened with initialize()."""
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.CLUSTER)

        await lifecycle.open()

        mock_client.initialize.assert_awaited_once()
        mock_client.ping.assert_not_called()

    async def test_cluster_ignores_db(
        self, mock_client: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A db index on a cluster is ignored with a warning."""
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.CLUSTER, db=2)

        await lifecycle.open()

        assert "only serves database 0" in caplog.text
        mock_client.execute_command.assert_not_called()

    async def test_connection_failure(self, mock_client: MagicMock) -> None:
        """Connection failures emit error and raise."""
        mock_client.ping.side_effect = RedisConnectionError("refused")
        lifecycle, seen = _lifecycle(mock_client)

        with pytest.raises(StoreInitializationError, match="refused"):
            await lifecycle.open()

        assert seen == ["error"]
        assert lifecycle.is_open is False

    async def test_external_client_not_pinged(self, mock_client: MagicMock) -> None:
        """Caller-managed clients are marked open without a round trip."""
        lifecycle, seen = _lifecycle(mock_client, kind=ClientKind.EXTERNAL, owns_client=False)

        await lifecycle.open()

        mock_client.ping.assert_not_called()
        assert lifecycle.is_open is True
        assert lifecycle.is_ready is False
        assert lifecycle.status == "open"
        assert seen == []

    async def test_external_client_db_selected(self, mock_client: MagicMock) -> None:
        """A db index is selected on caller-managed clients."""
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.EXTERNAL, owns_client=False, db=3)

        await lifecycle.open()
        await asyncio.sleep(0)

        mock_client.execute_command.assert_awaited_once_with("SELECT", 3)

    async def test_external_pool_keeps_db_for_reconnects(self) -> None:
        """New pool connections pick up the selected db."""
        client = Redis(host="cache.local", db=0)
        client.execute_command = AsyncMock(return_value=True)
        lifecycle, _ = _lifecycle(client, kind=ClientKind.EXTERNAL, owns_client=False, db=5)

        await lifecycle.open()
        await asyncio.sleep(0)

        assert client.connection_pool.connection_kwargs["db"] == 5
        client.execute_command.assert_awaited_once_with("SELECT", 5)

    async def test_failed_select_is_logged(
        self, mock_client: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failed SELECT is logged, not raised."""
        mock_client.execute_command.side_effect = ResponseError("DB index is out of range")
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.EXTERNAL, owns_client=False, db=99)

        await lifecycle.open()
        for _ in range(3):
            await asyncio.sleep(0)

        assert "Failed to select db 99" in caplog.text


class TestCommand:
    """Tests for the command() round-trip wrapper."""

    async def test_connection_loss_emits_reconnecting(self, mock_client: MagicMock) -> None:
        """A lost connection emits error then reconnecting."""
        lifecycle, seen = _lifecycle(mock_client)
        await lifecycle.open()
        seen.clear()

        with pytest.raises(RedisConnectionError):
            async with lifecycle.command():
                raise RedisConnectionError("connection reset")

        assert seen == ["error", "reconnecting"]
        assert lifecycle.is_ready is False
        assert lifecycle.status == "open"

    async def test_recovery_emits_ready(self, mock_client: MagicMock) -> None:
        """The first successful command after a loss emits ready."""
        lifecycle, seen = _lifecycle(mock_client)
        await lifecycle.open()
        with pytest.raises(RedisConnectionError):
            async with lifecycle.command():
                raise RedisConnectionError("connection reset")
        seen.clear()

        async with lifecycle.command():
            pass

        assert seen == ["ready"]
        assert lifecycle.is_ready is True

    async def test_command_errors_are_not_connection_events(self, mock_client: MagicMock) -> None:
        """Command errors leave the connection state alone."""
        lifecycle, seen = _lifecycle(mock_client)
        await lifecycle.open()
        seen.clear()

        with pytest.raises(ResponseError):
            async with lifecycle.command():
                raise ResponseError("WRONGTYPE")

        assert seen == []
        assert lifecycle.is_ready is True

    async def test_external_client_ready_after_first_command(self, mock_client: MagicMock) -> None:
        """Caller-managed clients become ready after a command."""
        lifecycle, seen = _lifecycle(mock_client, kind=ClientKind.EXTERNAL, owns_client=False)
        await lifecycle.open()

        async with lifecycle.command():
            pass

        assert seen == ["ready"]
        assert lifecycle.is_ready is True


class TestDiscoverModules:
    """Tests for module discovery."""

    async def test_discovery_is_cached(self, client_factory) -> None:
        """INFO modules is queried once per lifecycle."""
        client = client_factory(modules=["ReJSON"])
        lifecycle, _ = _lifecycle(client)
        await lifecycle.open()

        first = await lifecycle.discover_modules()
        second = await lifecycle.discover_modules()

        assert first == frozenset({"ReJSON"})
        assert second is first
        client.info.assert_awaited_once_with("modules")


class TestClose:
    """Tests for ConnectionLifecycle.close."""

    async def test_close_emits_events(self, mock_client: MagicMock) -> None:
        """close() emits close, end and disconnect."""
        lifecycle, seen = _lifecycle(mock_client)
        await lifecycle.open()
        seen.clear()

        await lifecycle.close()

        mock_client.aclose.assert_awaited_once()
        assert seen == ["close", "end", "disconnect"]
        assert lifecycle.status == "waiting"

    async def test_sentinel_connections_closed(self, mock_client: MagicMock) -> None:
        """Topology-aware close also closes sentinel connections."""
        sentinel_clients = [MagicMock(aclose=AsyncMock()), MagicMock(aclose=AsyncMock())]
        sentinel = MagicMock(sentinels=sentinel_clients)
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.SENTINEL, sentinel=sentinel)
        await lifecycle.open()

        await lifecycle.close(topology_aware=True)

        mock_client.aclose.assert_awaited_once()
        for sentinel_client in sentinel_clients:
            sentinel_client.aclose.assert_awaited_once()

    async def test_plain_close_leaves_sentinels(self, mock_client: MagicMock) -> None:
        """Plain close leaves sentinel connections open."""
        sentinel_client = MagicMock(aclose=AsyncMock())
        sentinel = MagicMock(sentinels=[sentinel_client])
        lifecycle, _ = _lifecycle(mock_client, kind=ClientKind.SENTINEL, sentinel=sentinel)
        await lifecycle.open()

        await lifecycle.close(topology_aware=False)

        sentinel_client.aclose.assert_not_called()

    async def test_close_error_still_emits_events(self, mock_client: MagicMock) -> None:
        """Close events fire even when aclose() fails."""
        mock_client.aclose.side_effect = RedisConnectionError("already gone")
        lifecycle, seen = _lifecycle(mock_client)
        await lifecycle.open()
        seen.clear()

        with pytest.raises(RedisConnectionError):
            await lifecycle.close()

        assert seen == ["close", "end", "disconnect"]
        assert lifecycle.is_open is False
