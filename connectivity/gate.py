"""Connectivity gate.

Decides whether remote calls may be attempted and bounds how long they may
take. Reachability combines a network probe with a manual forced-offline
switch:

    reachable = probe() AND NOT force_offline

Probe results are cached for a few seconds so a burst of remote calls does not
re-probe each time. When the gate says unreachable, ``with_timeout`` raises
ConnectivityError before the operation factory is even called, so no I/O is
attempted.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, TypeVar

import aiohttp

from core.errors import ConnectivityError, RemoteTimeoutError
from core.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Probes
# =============================================================================

class ConnectivityProbe(ABC):
    """Network reachability signal."""

    @abstractmethod
    async def check(self) -> bool:
        """True if the network path to the remote store looks usable."""
        pass


class TcpProbe(ConnectivityProbe):
    """Opens a TCP connection to a well-known host:port."""

    def __init__(self, host: str = "1.1.1.1", port: int = 53, timeout_seconds: float = 3.0):
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds

    async def check(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"TCP probe {self.host}:{self.port} failed: {e}")
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class HttpHealthProbe(ConnectivityProbe):
    """GETs a health URL; any status below 400 counts as reachable."""

    def __init__(self, url: str, timeout_seconds: float = 3.0):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def check(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.url) as response:
                    return response.status < 400
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Health probe {self.url} failed: {e}")
            return False


class StaticProbe(ConnectivityProbe):
    """Fixed answer, switchable at runtime (tests and offline demos)."""

    def __init__(self, online: bool = True):
        self.online = online
        self.checks = 0

    async def check(self) -> bool:
        self.checks += 1
        return self.online


# =============================================================================
# Gate
# =============================================================================

class ConnectivityGate:
    """Reachability check plus timeout wrapper for every remote call.

    Usage:
        gate = ConnectivityGate(TcpProbe(), default_timeout=30.0)
        if await gate.reachable():
            shipments = await gate.with_timeout(lambda: remote.list(owner, EntityKind.SHIPMENT))
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        force_offline: bool = False,
        cache_seconds: float = 5.0,
        default_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.probe = probe
        self.cache_seconds = cache_seconds
        self.default_timeout = default_timeout
        self._force_offline = force_offline
        self._clock = clock

        self._cached: Optional[bool] = None
        self._cached_at: float = 0.0
        self._last_state: Optional[bool] = None
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def force_offline(self) -> bool:
        return self._force_offline

    def set_force_offline(self, value: bool) -> None:
        """Toggle the manual offline switch."""
        if value != self._force_offline:
            logger.info(f"Forced offline {'enabled' if value else 'disabled'}")
        self._force_offline = value
        self.invalidate()

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        """Call ``callback(online)`` whenever reachability flips."""
        self._listeners.append(callback)

    def invalidate(self) -> None:
        """Drop the cached probe result."""
        self._cached = None

    @property
    def last_known(self) -> Optional[bool]:
        """Most recent reachability answer without probing (None if never checked)."""
        return self._last_state

    async def _probe(self) -> bool:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.cache_seconds:
            return self._cached
        result = await self.probe.check()
        self._cached = result
        self._cached_at = now
        return result

    async def reachable(self) -> bool:
        """Probe result AND NOT forced offline."""
        online = False if self._force_offline else await self._probe()
        if online != self._last_state:
            self._last_state = online
            for callback in list(self._listeners):
                callback(online)
        return online

    async def with_timeout(
        self,
        op_factory: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        operation: str = "remote call",
    ) -> T:
        """Run a remote operation under the gate.

        Args:
            op_factory: Zero-argument callable returning the coroutine to run
            timeout: Bound in seconds (defaults to ``default_timeout``)
            operation: Name used in error messages

        Raises:
            ConnectivityError: Unreachable; ``op_factory`` was not called
            RemoteTimeoutError: The operation did not finish in time
        """
        if not await self.reachable():
            raise ConnectivityError(
                f"Cannot run {operation}: remote store is "
                f"{'forced offline' if self._force_offline else 'not reachable'}",
                forced_offline=self._force_offline,
            )

        bound = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(op_factory(), timeout=bound)
        except asyncio.TimeoutError as e:
            # Next call re-probes instead of trusting a stale "online"
            self.invalidate()
            raise RemoteTimeoutError(f"{operation} timed out after {bound}s", timeout_seconds=bound) from e
