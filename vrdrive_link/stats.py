from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import typing

from . import config
from .events import Signal
from .negotiation import PeerNegotiationEngine

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class StatsSample:
    timestamp: float # monotonic seconds
    report: typing.Mapping[str, typing.Any]
    video_bytes_received: int | None = None
    video_bitrate: float | None = None # bits per second

    def by_type(self, stat_type: str) -> list[typing.Any]:
        return [s for s in self.report.values() if getattr(s, "type", None) == stat_type]


def _video_bytes(report: typing.Mapping[str, typing.Any]) -> int | None:
    total = None
    for s in report.values():
        if getattr(s, "type", None) == "inbound-rtp" and getattr(s, "kind", None) == "video":
            total = (total or 0) + (getattr(s, "bytesReceived", 0) or 0)
    return total


class MetricsPoller:
    """Polls ``getStats()`` of the engine's current peer connection.

    Emits ``stats_updated(StatsSample)``. Ticks without a peer connection
    are skipped; a failing poll is logged and the loop keeps going.
    """
    def __init__(self, engine: PeerNegotiationEngine):
        self.stats_updated = Signal("stats_updated")
        self.latest: StatsSample | None = None

        self._engine = engine
        self._task: asyncio.Task | None = None
        self._interval = config.STATS_INTERVAL
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, interval: float = config.STATS_INTERVAL) -> None:
        if self._running:
            logger.warning("STATS: poller already running")
            return
        self._interval = interval
        self._running = True
        self.latest = None
        self._task = asyncio.create_task(self._loop())
        logger.debug("STATS: polling every %.1f seconds", interval)

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("STATS: stopped")

    async def aclose(self) -> None:
        await self.stop()

    def stat_by_type(self, stat_type: str) -> list[typing.Any]:
        if self.latest is None:
            return []
        return self.latest.by_type(stat_type)

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("STATS: failed to poll stats", exc_info=True)

    async def poll(self) -> StatsSample | None:
        pc = self._engine.peer_connection
        if pc is None:
            return None
        report = await pc.getStats()
        if not self._running or pc is not self._engine.peer_connection:
            return None
        now = time.monotonic()
        video_bytes = _video_bytes(report)
        bitrate = None
        previous = self.latest
        if (previous is not None and video_bytes is not None and previous.video_bytes_received is not None
                and now > previous.timestamp and video_bytes >= previous.video_bytes_received):
            bitrate = (video_bytes - previous.video_bytes_received) * 8 / (now - previous.timestamp)
        sample = StatsSample(timestamp=now, report=dict(report), video_bytes_received=video_bytes,
                             video_bitrate=bitrate)
        self.latest = sample
        self.stats_updated.emit(sample)
        return sample
