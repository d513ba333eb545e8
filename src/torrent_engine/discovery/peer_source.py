"""
Peer discovery feed.

Tracker announces, DHT lookups and manually supplied addresses are merged
into one asyncio queue and handed out as PeerCandidate objects through
`async for`. A failing source is reported through `on_degraded` and retried
on its next tick while the other sources keep producing.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import DHTError, PeerSourceDegraded, TorrentEngineError, TrackerError
from ..tracker import TrackerClient
from .dht import DHTClient

logger = logging.getLogger(__name__)


class PeerSourceKind(str, Enum):
    TRACKER = "tracker"
    DHT = "dht"
    MANUAL = "manual"


@dataclass(frozen=True)
class PeerCandidate:
    host: str
    port: int
    source: PeerSourceKind

    @property
    def address(self) -> Tuple[str, int]:
        return self.host, self.port


def _no_stats():
    return {"uploaded": 0, "downloaded": 0, "left": 0}


class PeerSource:
    """Lazy, unbounded and non-restartable sequence of peer candidates."""

    def __init__(
        self,
        info_hash: bytes,
        peer_id: bytes,
        config,
        trackers: Iterable[str] = (),
        manual: Iterable[Tuple[str, int]] = (),
        stats: Callable[[], dict] = None,
        on_degraded: Callable[[PeerSourceDegraded], None] = None,
        tracker_client=None,
        dht_client=None,
        clock=time.monotonic,
    ):
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.config = config
        self._manual = list(manual)
        self._stats = stats or _no_stats
        self._on_degraded = on_degraded
        self._clock = clock

        self._tracker = tracker_client
        trackers = list(trackers)
        if self._tracker is None and config.use_trackers and trackers:
            try:
                self._tracker = TrackerClient(trackers, info_hash, peer_id, config.port)
            except TrackerError as e:
                logger.warning("No usable tracker for %s: %s", info_hash.hex(), e)

        self._dht = dht_client
        if self._dht is None and config.dht_enabled:
            self._dht = DHTClient()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._seen: Dict[Tuple[str, int], float] = {}
        self._last_prune = clock()
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._closed = False

    # ------------------------------------------------------------
    #   Lifecycle
    # ------------------------------------------------------------

    def start(self):
        if self._started:
            raise RuntimeError("PeerSource cannot be restarted")
        self._started = True

        for host, port in self._manual:
            self.add(host, port, PeerSourceKind.MANUAL)
        if self._tracker is not None:
            self._tasks.append(asyncio.create_task(self._tracker_loop()))
        if self._dht is not None:
            self._tasks.append(asyncio.create_task(self._dht_loop()))
        logger.debug("Peer source started with %d background loops", len(self._tasks))

    async def close(self):
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------
    #   Feed
    # ------------------------------------------------------------

    def add(self, host: str, port: int, source: PeerSourceKind) -> bool:
        """Queue a candidate unless the same address was offered within the dedup window."""
        if self._closed:
            return False
        now = self._clock()
        if now - self._last_prune >= self.config.dedup_window:
            self._prune()
        key = (host, port)
        last = self._seen.get(key)
        if last is not None and now - last < self.config.dedup_window:
            return False
        self._seen[key] = now
        self._queue.put_nowait(PeerCandidate(host, port, source))
        return True

    def _prune(self):
        now = self._clock()
        self._last_prune = now
        horizon = now - self.config.dedup_window
        for key in [k for k, seen in self._seen.items() if seen < horizon]:
            del self._seen[key]

    def __aiter__(self):
        return self

    async def __anext__(self) -> PeerCandidate:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        candidate = await self._queue.get()
        if candidate is None:
            raise StopAsyncIteration
        return candidate

    def _degraded(self, source: PeerSourceKind, exc: BaseException):
        error = PeerSourceDegraded(source.value, exc)
        logger.warning("%s", error)
        if self._on_degraded is not None:
            self._on_degraded(error)

    # ------------------------------------------------------------
    #   Sources
    # ------------------------------------------------------------

    async def _tracker_loop(self):
        event: Optional[str] = "started"
        while True:
            delay = self.config.min_announce_interval
            try:
                response = await self._tracker.announce(event=event, **self._stats())
            except (TorrentEngineError, OSError, asyncio.TimeoutError) as e:
                self._degraded(PeerSourceKind.TRACKER, e)
            else:
                event = None
                added = sum(self.add(h, p, PeerSourceKind.TRACKER) for h, p in response.peers)
                logger.info("Trackers returned %d peers (%d new)", len(response.peers), added)
                delay = max(float(response.interval), delay)
            await asyncio.sleep(delay)

    async def _dht_loop(self):
        while True:
            try:
                peers = await self._dht.get_peers(self.info_hash, timeout=self.config.dht_bootstrap_timeout)
            except (DHTError, OSError) as e:
                self._degraded(PeerSourceKind.DHT, e)
            else:
                added = sum(self.add(h, p, PeerSourceKind.DHT) for h, p in peers)
                logger.info("DHT lookup returned %d peers (%d new)", len(peers), added)
            await asyncio.sleep(self.config.dht_lookup_interval)
