"""
Connectivity gate tests: forced offline, probe caching, timeouts and
reachability listeners.
"""

import asyncio

import pytest

from connectivity import ConnectivityGate, StaticProbe
from core.errors import ConnectivityError, RemoteTimeoutError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestReachability:
    """probe() AND NOT force_offline"""

    def test_online_probe(self):
        gate = ConnectivityGate(StaticProbe(online=True))
        assert asyncio.run(gate.reachable()) is True

    def test_offline_probe(self):
        gate = ConnectivityGate(StaticProbe(online=False))
        assert asyncio.run(gate.reachable()) is False

    def test_force_offline_skips_probe(self):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, force_offline=True)

        assert asyncio.run(gate.reachable()) is False
        assert probe.checks == 0

    def test_force_offline_toggle(self):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe)

        async def scenario():
            gate.set_force_offline(True)
            forced = await gate.reachable()
            gate.set_force_offline(False)
            return forced, await gate.reachable()

        assert asyncio.run(scenario()) == (False, True)
        assert gate.force_offline is False


class TestProbeCache:
    """Probe results are reused for cache_seconds."""

    def test_cached_within_window(self, clock):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, cache_seconds=5.0, clock=clock)

        async def scenario():
            await gate.reachable()
            clock.now = 4.0
            await gate.reachable()

        asyncio.run(scenario())
        assert probe.checks == 1

    def test_reprobe_after_window(self, clock):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, cache_seconds=5.0, clock=clock)

        async def scenario():
            first = await gate.reachable()
            probe.online = False
            clock.now = 6.0
            return first, await gate.reachable()

        assert asyncio.run(scenario()) == (True, False)
        assert probe.checks == 2

    def test_invalidate_forces_reprobe(self, clock):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, cache_seconds=5.0, clock=clock)

        async def scenario():
            await gate.reachable()
            gate.invalidate()
            await gate.reachable()

        asyncio.run(scenario())
        assert probe.checks == 2


class TestWithTimeout:
    """Remote calls run through the gate."""

    def test_returns_result(self):
        gate = ConnectivityGate(StaticProbe(online=True))

        async def op():
            return 42

        assert asyncio.run(gate.with_timeout(op)) == 42

    def test_unreachable_never_calls_factory(self):
        gate = ConnectivityGate(StaticProbe(online=False))
        calls = []

        def factory():
            calls.append(True)
            return asyncio.sleep(0)

        with pytest.raises(ConnectivityError) as exc_info:
            asyncio.run(gate.with_timeout(factory, operation="list shipments"))

        assert calls == []
        assert exc_info.value.forced_offline is False
        assert "list shipments" in str(exc_info.value)

    def test_forced_offline_flagged_on_error(self):
        gate = ConnectivityGate(StaticProbe(online=True), force_offline=True)

        with pytest.raises(ConnectivityError) as exc_info:
            asyncio.run(gate.with_timeout(lambda: asyncio.sleep(0)))

        assert exc_info.value.forced_offline is True

    def test_timeout_raises_and_invalidates(self, clock):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, cache_seconds=60.0, clock=clock)

        async def scenario():
            with pytest.raises(RemoteTimeoutError) as exc_info:
                await gate.with_timeout(lambda: asyncio.sleep(1), timeout=0.01)
            await gate.reachable()
            return exc_info.value

        error = asyncio.run(scenario())
        assert error.timeout_seconds == 0.01
        assert isinstance(error.__cause__, asyncio.TimeoutError)
        assert probe.checks == 2

    def test_operation_errors_propagate(self):
        gate = ConnectivityGate(StaticProbe(online=True))

        async def op():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            asyncio.run(gate.with_timeout(op))


class TestListeners:
    """Listeners fire on reachability flips only."""

    def test_flip_notifications(self):
        probe = StaticProbe(online=True)
        gate = ConnectivityGate(probe, cache_seconds=0)
        seen = []
        gate.add_listener(seen.append)

        async def scenario():
            await gate.reachable()
            await gate.reachable()
            probe.online = False
            await gate.reachable()
            gate.set_force_offline(True)
            await gate.reachable()
            probe.online = True
            gate.set_force_offline(False)
            await gate.reachable()

        asyncio.run(scenario())
        assert seen == [True, False, True]
        assert gate.last_known is True

    def test_last_known_before_first_check(self):
        gate = ConnectivityGate(StaticProbe(online=True))
        assert gate.last_known is None
