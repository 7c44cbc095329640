"""
ConnectivityMonitor - Tracks whether the API is reachable.

States:
- ONLINE: requests are expected to reach the server
- OFFLINE: a probe confirmed the server is unreachable

Transitions:
- ONLINE → OFFLINE: a failed probe after a network-level failure
- OFFLINE → ONLINE: a successful probe (periodic while offline)

Listeners are notified on every transition with the new state.
"""

import asyncio
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

Probe = Callable[[], Awaitable[bool]]

PROBE_JOB_ID = "connectivity_probe"


class ConnectivityMonitor:
    """
    Online/offline state with transition listeners.

    Usage:
        monitor = ConnectivityMonitor(probe=client.probe)
        monitor.add_listener(lambda online: print("online" if online else "offline"))

        if await monitor.confirm_offline():
            ...
    """

    def __init__(self, probe: Probe | None = None, online: bool = True):
        self._probe = probe
        self._online = online
        self._listeners: list[Callable[[bool], Any]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_probe(self, probe: Probe) -> None:
        self._probe = probe

    def add_listener(self, listener: Callable[[bool], Any]) -> Callable[[], None]:
        """Register a transition listener. Returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def set_online(self, online: bool) -> None:
        """Record the connectivity state, notifying listeners on change."""
        if online == self._online:
            return

        self._online = online
        if online:
            logger.info("Connectivity regained")
        else:
            logger.warning("Connectivity lost")

        for listener in list(self._listeners):
            try:
                result = listener(online)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.exception(f"Connectivity listener failed: {e}")

    async def confirm_offline(self) -> bool:
        """
        Confirm that the client is offline.

        Called after a network-level failure. Without a probe the current
        state is trusted as is.
        """
        if not self._online:
            return True
        if self._probe is None:
            return False

        reachable = await self._probe()
        if not reachable:
            await self.set_online(False)
        return not reachable

    async def check(self) -> bool:
        """Probe and record the result. Returns the online state."""
        if self._probe is None:
            return self._online
        await self.set_online(await self._probe())
        return self._online

    async def _probe_while_offline(self) -> None:
        if not self._online:
            await self.check()

    def start(self, scheduler: AsyncIOScheduler, interval_seconds: int) -> None:
        """Re-probe on an interval while offline."""
        scheduler.add_job(
            self._probe_while_offline,
            trigger="interval",
            seconds=interval_seconds,
            id=PROBE_JOB_ID,
            name="Connectivity Probe",
            replace_existing=True,
        )
        logger.debug(f"Connectivity probe scheduled every {interval_seconds}s")
