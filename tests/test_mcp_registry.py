"""Tests for the MCP connection registry."""

import asyncio

import pytest

from fakes import make_config
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.mcp.types import ConnectionStatus


class TestConnect:
    """connect() state transitions."""

    @pytest.mark.asyncio
    async def test_connect_success(self, farm):
        async with ConnectionRegistry(farm) as registry:
            result = await registry.connect(make_config("a"))

            assert result.success is True
            assert result.error is None
            assert registry.get_status("a") == ConnectionStatus.CONNECTED
            assert [s.to_dict() for s in registry.get_all_servers()] == [
                {"id": "a", "name": "A", "status": "connected"}
            ]

    @pytest.mark.asyncio
    async def test_connect_failure_records_error(self, farm):
        farm.connect_errors["a"] = OSError("No such file or directory: 'missing-binary'")

        async with ConnectionRegistry(farm) as registry:
            result = await registry.connect(make_config("a"))

            assert result.success is False
            assert "missing-binary" in result.error
            assert registry.get_status("a") == ConnectionStatus.ERROR
            snapshot = registry.get_all_servers()[0]
            assert snapshot.error == result.error

    @pytest.mark.asyncio
    async def test_connect_never_settles_in_connecting(self, farm):
        farm.connect_errors["bad"] = RuntimeError("handshake refused")

        async with ConnectionRegistry(farm) as registry:
            for server_id in ("good", "bad"):
                await registry.connect(make_config(server_id))
                assert registry.get_status(server_id) in (
                    ConnectionStatus.CONNECTED,
                    ConnectionStatus.ERROR,
                )

    @pytest.mark.asyncio
    async def test_connect_timeout_demotes_to_error(self, farm):
        farm.hang.add("slow")

        async with ConnectionRegistry(farm, connect_timeout=0.05) as registry:
            result = await registry.connect(make_config("slow"))

            assert result.success is False
            assert result.error == "Connection timed out after 0.05s"
            assert registry.get_status("slow") == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_exception_group_is_unwrapped(self, farm):
        farm.connect_errors["a"] = ExceptionGroup("unhandled errors in a TaskGroup", [ConnectionError("refused")])

        async with ConnectionRegistry(farm) as registry:
            result = await registry.connect(make_config("a"))

            assert result.error == "refused"


class TestReconnect:
    """A second connect for the same id replaces the first session."""

    @pytest.mark.asyncio
    async def test_reconnect_closes_previous_session_first(self, farm):
        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))
            await registry.connect(make_config("a", name="Renamed"))

            assert farm.opened == ["a", "a"]
            assert farm.closed == ["a"]
            assert farm.max_live["a"] == 1
            assert registry.get_config("a").name == "Renamed"
            assert len(registry.get_all_servers()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_same_id_never_overlap(self, farm):
        farm.open_delay["a"] = 0.01

        async with ConnectionRegistry(farm) as registry:
            results = await asyncio.gather(*(registry.connect(make_config("a")) for _ in range(3)))

            assert all(r.success for r in results)
            assert farm.max_live["a"] == 1
            assert farm.live["a"] == 1

    @pytest.mark.asyncio
    async def test_different_ids_proceed_independently(self, farm):
        farm.hang.add("slow")

        async with ConnectionRegistry(farm, connect_timeout=0.5) as registry:
            slow = asyncio.create_task(registry.connect(make_config("slow")))
            await asyncio.sleep(0.01)

            fast = await registry.connect(make_config("fast"))

            assert fast.success is True
            assert registry.get_status("slow") == ConnectionStatus.CONNECTING
            assert (await slow).success is False


class TestDisconnect:
    """disconnect() semantics."""

    @pytest.mark.asyncio
    async def test_disconnect_unknown_server(self, farm):
        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))
            before = registry.get_all_servers()

            first = await registry.disconnect("missing")
            second = await registry.disconnect("missing")

            assert first.success is False
            assert first.error == "Server not found"
            assert second.error == "Server not found"
            assert registry.get_all_servers() == before

    @pytest.mark.asyncio
    async def test_disconnect_closes_and_removes(self, farm):
        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))

            result = await registry.disconnect("a")

            assert result.success is True
            assert farm.live["a"] == 0
            assert registry.get_status("a") == ConnectionStatus.DISCONNECTED
            assert registry.get_all_servers() == []

    @pytest.mark.asyncio
    async def test_close_failure_still_removes_entry(self, farm):
        farm.close_errors["a"] = RuntimeError("process did not exit")

        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))

            result = await registry.disconnect("a")

            assert result.success is False
            assert result.error == "process did not exit"
            assert registry.get_all_servers() == []
            assert registry.get_status("a") == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_errored_entry(self, farm):
        farm.connect_errors["a"] = RuntimeError("boom")

        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))

            result = await registry.disconnect("a")

            assert result.success is True
            assert registry.get_all_servers() == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_aclose_sweeps_every_connection(self, farm):
        registry = ConnectionRegistry(farm)
        for server_id in ("a", "b", "c"):
            await registry.connect(make_config(server_id))

        await registry.aclose()

        assert sum(farm.live.values()) == 0
        assert sorted(farm.closed) == ["a", "b", "c"]
        assert registry.get_all_servers() == []

    @pytest.mark.asyncio
    async def test_health_summary(self, farm):
        farm.connect_errors["b"] = RuntimeError("boom")

        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))
            await registry.connect(make_config("b"))

            assert registry.get_health_summary() == {
                "disconnected": 0,
                "connecting": 0,
                "connected": 1,
                "error": 1,
            }

    @pytest.mark.asyncio
    async def test_hold_is_per_server(self, farm):
        registry = ConnectionRegistry(farm)
        order = []

        async def hold(server_id: str, label: str, delay: float):
            async with registry.hold(server_id):
                order.append(f"{label}-start")
                await asyncio.sleep(delay)
                order.append(f"{label}-end")

        await asyncio.gather(hold("a", "a1", 0.05), hold("a", "a2", 0), hold("b", "b1", 0))

        assert order.index("a1-end") < order.index("a2-start")
        assert order.index("b1-end") < order.index("a1-end")


class TestLockTable:
    """Per-server locks do not outlive their entries."""

    @pytest.mark.asyncio
    async def test_unknown_disconnects_do_not_grow_locks(self, farm):
        registry = ConnectionRegistry(farm)

        for i in range(1000):
            result = await registry.disconnect(f"ghost-{i}")
            assert result.error == "Server not found"

        assert registry._locks == {}

    @pytest.mark.asyncio
    async def test_lock_dropped_after_disconnect(self, farm):
        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))
            assert set(registry._locks) == {"a"}

            await registry.disconnect("a")

            assert registry._locks == {}
            assert registry._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_kept_while_waiters_remain(self, farm):
        async with ConnectionRegistry(farm) as registry:
            await registry.connect(make_config("a"))

            # Disconnect and reconnect queue on the same lock; the reconnect
            # must still be serialized after the disconnect finishes.
            disconnected, reconnected = await asyncio.gather(
                registry.disconnect("a"), registry.connect(make_config("a"))
            )

            assert disconnected.success is True
            assert reconnected.success is True
            assert registry.get_status("a") == ConnectionStatus.CONNECTED
            assert farm.max_live["a"] == 1
            assert set(registry._locks) == {"a"}
