import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Set, Tuple

from .errors import ConnectionLimitExceeded, StorageError, TorrentEngineError
from .events import EventType
from .peer.wire_session import WireSession
from .pieces.store import PieceOutcome

logger = logging.getLogger(__name__)


class SwarmState(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class SwarmController:
    """
    Owns every WireSession of one download. Sessions call back into the
    controller for block requests and deliveries; all of those callbacks are
    synchronous so scheduler and store updates never interleave.
    """

    def __init__(self, info_hash: bytes, peer_id: bytes, config, events,
                 metadata_exchange=None,
                 on_fatal: Callable[[BaseException], None] = None,
                 on_metadata: Callable[[bytes], None] = None,
                 on_verified: Callable[[int], None] = None,
                 clock=time.monotonic):
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.config = config
        self.events = events
        self.clock = clock

        # set by attach() once metadata is known
        self.metadata = None
        self.scheduler = None
        self.store = None
        self.metadata_exchange = metadata_exchange

        self.state = SwarmState.ACTIVE
        self.sessions: Dict[Tuple[str, int], WireSession] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._on_fatal = on_fatal
        self._on_metadata = on_metadata
        self._on_verified = on_verified
        self._closed = False

        # byte accounting
        self.downloaded = 0
        self._baseline = 0
        self._samples: Deque[Tuple[float, int]] = deque()

    def __repr__(self):
        return f"SwarmController({self.info_hash.hex()[:8]}, {len(self.sessions)} sessions, {self.state.value})"

    def attach(self, metadata, scheduler, store):
        """Metadata is ready: hand it to every live session."""
        self.metadata = metadata
        self.scheduler = scheduler
        self.store = store
        self.metadata_exchange = None
        for session in list(self.sessions.values()):
            session.on_metadata(metadata)

    @property
    def connection_count(self) -> int:
        return len(self.sessions)

    def active_sessions(self):
        return [s for s in self.sessions.values() if s.active]

    def wake_all(self):
        for session in self.sessions.values():
            session.wake()

    # ------------------------------------------------------------
    #   Session lifecycle
    # ------------------------------------------------------------

    def add_candidate(self, host: str, port: int, source=None) -> Optional[WireSession]:
        if self._closed:
            return None
        address = (host, port)
        if address in self.sessions:
            logger.debug("Already connected to %s:%d, dropping candidate", host, port)
            return None
        if len(self.sessions) >= self.config.max_connections:
            self.report(ConnectionLimitExceeded(
                f"Connection limit {self.config.max_connections} reached, dropping {host}:{port}",
                address,
            ))
            return None

        session = WireSession(self, host, port, source)
        self.sessions[address] = session
        task = asyncio.create_task(session.run())
        self._tasks.add(task)
        task.add_done_callback(lambda t, s=session: self._session_done(s, t))
        return session

    def _session_done(self, session: WireSession, task: asyncio.Task):
        self._tasks.discard(task)
        if self.sessions.get(session.address) is session:
            del self.sessions[session.address]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, StorageError):
            logger.error("Storage failure in %r: %s", session, exc)
            if self._on_fatal is not None:
                self._on_fatal(exc)
            return
        logger.error("%r crashed", session, exc_info=exc)
        self.events.emit(EventType.WARNING, exc)

    def session_active(self, session: WireSession):
        logger.info("Connected to peer %s:%d", *session.address)
        self.events.emit(EventType.PEER_CONNECTED, session.address)

    def session_closed(self, session: WireSession, error: Optional[TorrentEngineError]):
        if self.scheduler is not None:
            released = self.scheduler.remove_peer(session)
            if released:
                logger.debug("%r returned %d blocks to the pool", session, released)
                self.wake_all()
        if error is not None:
            self.report(error)
        if session.remote_peer_id is not None:
            self.events.emit(EventType.PEER_DISCONNECTED, session.address, session.close_reason)

    def report(self, error: TorrentEngineError):
        """Every non-fatal peer-level failure ends up here."""
        logger.warning("%s", error)
        self.events.emit(EventType.WARNING, error)

    # ------------------------------------------------------------
    #   Pause / resume
    # ------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return self.state is SwarmState.PAUSED

    def pause(self):
        if self.state is SwarmState.PAUSED:
            return
        self.state = SwarmState.PAUSED
        logger.info("Swarm paused, no new requests will be issued")

    def resume(self):
        if self.state is SwarmState.ACTIVE:
            return
        self.state = SwarmState.ACTIVE
        logger.info("Swarm resumed")
        self.wake_all()

    # ------------------------------------------------------------
    #   Data path
    # ------------------------------------------------------------

    def request_blocks(self, session: WireSession, capacity: int):
        if self.state is SwarmState.PAUSED or self.scheduler is None:
            return []
        return self.scheduler.next_requests(session, capacity)

    def on_block(self, session: WireSession, request, block: bytes):
        self._account(len(block))
        index = request.index

        for other in self.scheduler.block_received(session, index, request.begin):
            other.cancel_block(request)

        if self.store.have(index):
            return
        outcome = self.store.submit_block(index, request.begin, block)

        if outcome is PieceOutcome.VERIFIED_OK:
            self.scheduler.piece_verified(index)
            for peer in self.active_sessions():
                peer.send_have(index)
            if self._on_verified is not None:
                self._on_verified(index)
        elif outcome is PieceOutcome.VERIFIED_FAILED:
            self.scheduler.piece_failed(index)
            self.wake_all()

    def on_metadata_piece(self, session: WireSession, piece: int, data: bytes):
        exchange = self.metadata_exchange
        if exchange is None:
            return
        blob = exchange.add_piece(piece, data)
        if blob is None:
            self.wake_all()
            return
        logger.info("Fetched %d bytes of metadata from the swarm", len(blob))
        if self._on_metadata is not None:
            self._on_metadata(blob)

    # ------------------------------------------------------------
    #   Byte accounting
    # ------------------------------------------------------------

    def _account(self, nbytes: int):
        now = self.clock()
        self.downloaded += nbytes
        self._samples.append((now, nbytes))
        self._trim(now)

    def _trim(self, now: float):
        horizon = now - self.config.speed_window
        while self._samples and self._samples[0][0] < horizon:
            self._samples.popleft()

    def download_speed(self) -> float:
        """Bytes per second over the last speed_window seconds."""
        self._trim(self.clock())
        return sum(n for _, n in self._samples) / self.config.speed_window

    def snapshot(self):
        self._baseline = self.downloaded

    def bytes_since_snapshot(self) -> int:
        return self.downloaded - self._baseline

    # ------------------------------------------------------------
    #   Shutdown
    # ------------------------------------------------------------

    async def shutdown(self):
        """Close every session and wait until their teardown has finished."""
        self._closed = True
        for session in list(self.sessions.values()):
            session.close("engine shutdown")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.sessions.clear()
        logger.info("Swarm shut down after %d bytes downloaded", self.downloaded)
