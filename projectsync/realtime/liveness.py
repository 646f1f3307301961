from __future__ import annotations

"""Heartbeat sweep that reclaims connections which stopped answering."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .envelope import MessageType, make_envelope
from .router import BroadcastRouter

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0
DEFAULT_TIMEOUT = 60.0


@dataclass
class SweepReport:
    evicted: List[str] = field(default_factory=list)
    probed: int = 0


class LivenessMonitor:
    """
    Periodic sweep over every registered connection.

    Connections that are marked stale, or whose last heartbeat is older than
    ``timeout`` seconds, are closed and unregistered; the rest receive a
    ``PING`` probe. The sweep runs on the relay's event loop so registry
    mutations stay serialized with message handling.
    """

    def __init__(
        self,
        router: BroadcastRouter,
        *,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0 or timeout <= 0:
            raise ValueError("heartbeat interval and timeout must be positive")
        self.router = router
        self.interval = float(interval)
        self.timeout = float(timeout)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        LOGGER.info(
            "Liveness monitor started (interval=%ss, timeout=%ss)",
            self.interval,
            self.timeout,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        LOGGER.info("Liveness monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                LOGGER.exception("Liveness sweep failed")

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        registry = self.router.registry
        now = self._clock()
        for conn in registry.connections():
            expired = now - conn.last_heartbeat_at > self.timeout
            if conn.stale or expired:
                LOGGER.info(
                    "Evicting %s (stale=%s, silent for %.1fs)",
                    conn.client_id,
                    conn.stale,
                    now - conn.last_heartbeat_at,
                )
                try:
                    await conn.transport.close(1001, "heartbeat timeout")
                except Exception as exc:
                    LOGGER.debug("Close failed for %s: %s", conn.client_id, exc)
                await self.router.unregister(conn.client_id)
                report.evicted.append(conn.client_id)
                continue
            probe = make_envelope(MessageType.PING, {"clientId": conn.client_id})
            if await self.router.send(conn.client_id, probe):
                report.probed += 1
        if report.evicted:
            LOGGER.info(
                "Liveness sweep evicted %s connection(s), probed %s",
                len(report.evicted),
                report.probed,
            )
        return report


__all__ = ["DEFAULT_INTERVAL", "DEFAULT_TIMEOUT", "LivenessMonitor", "SweepReport"]
