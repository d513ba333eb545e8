"""
Engine: one download, from descriptor to verified files.

Every Engine is an independent object; several can run side by side in the
same event loop without sharing state.
"""
import asyncio
import hashlib
import logging
import random
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Union

from .config import EngineConfig, parse_peer_address
from .discovery import PeerSource
from .errors import MalformedMetadata, StorageError, TorrentEngineError
from .events import EventBus, EventType, Subscription
from .files import TorrentFile
from .peer import MetadataExchange
from .pieces import PieceScheduler, VerificationStore
from .storage import FileStorage, MemoryStorage
from .swarm import SwarmController
from .torrent import MagnetLink, parse_descriptor, parse_info_dict

logger = logging.getLogger(__name__)

PEER_ID_PREFIX = b"-TE0100-"


def generate_peer_id() -> bytes:
    return PEER_ID_PREFIX + "".join(random.choice("0123456789") for _ in range(12)).encode()


def download_id(descriptor: Union[bytes, str]) -> str:
    """Stable identity of a download: MD5 of the descriptor source."""
    if isinstance(descriptor, str):
        descriptor = descriptor.encode("utf-8")
    return hashlib.md5(bytes(descriptor)).hexdigest()


class Engine:
    def __init__(self, config: Union[EngineConfig, Mapping, None] = None, peer_id: bytes = None):
        if config is None:
            config = EngineConfig()
        elif not isinstance(config, EngineConfig):
            config = EngineConfig.from_options(config)
        self.config = config
        self.peer_id = peer_id or generate_peer_id()
        self.events = EventBus()

        self.id: Optional[str] = None
        self.info_hash: Optional[bytes] = None
        self.magnet: Optional[MagnetLink] = None
        self.metadata = None
        self.storage = None
        self.store: Optional[VerificationStore] = None
        self.scheduler: Optional[PieceScheduler] = None
        self.swarm: Optional[SwarmController] = None
        self.peer_source: Optional[PeerSource] = None
        self.files: List[TorrentFile] = []

        self._started = False
        self._ready = False
        self._done = False
        self._interested = None
        self._fatal: Optional[BaseException] = None
        self._ready_signal = asyncio.Event()
        self._finish_signal = asyncio.Event()
        self._feed_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def __repr__(self):
        name = self.metadata.name if self.metadata is not None else None
        return f"Engine(id={self.id}, name={name!r}, {self.percent_complete()}%)"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    def on(self, event, handler: Callable) -> Subscription:
        return self.events.subscribe(event, handler)

    @property
    def storage_path(self) -> Path:
        if self.config.download_directory is not None:
            return Path(self.config.download_directory)
        return Path.cwd() / self.id

    @property
    def _owns_storage_path(self) -> bool:
        # cwd/<id> belongs to this download alone; a caller's directory does not
        return self.config.download_directory is None

    # ------------------------------------------------------------
    #   Start
    # ------------------------------------------------------------

    async def start(self, descriptor: Union[bytes, str]):
        """
        Load a descriptor (.torrent bytes or magnet URI) and start joining the
        swarm. Raises MalformedMetadata if the descriptor cannot be used.
        """
        if self._started:
            raise RuntimeError("Engine.start() may only be called once")
        if not descriptor:
            raise MalformedMetadata("Empty torrent descriptor")

        parsed = parse_descriptor(descriptor)
        self._started = True
        self.id = download_id(descriptor)

        manual = list(self.config.manual_addresses)
        exchange = None
        if isinstance(parsed, MagnetLink):
            self.magnet = parsed
            self.info_hash = parsed.info_hash
            trackers = parsed.trackers
            manual.extend(parsed.peers)
            exchange = MetadataExchange(parsed.info_hash, self.config.request_timeout)
            logger.info("Loading magnet %s, metadata will be fetched from peers", parsed.info_hash.hex())
        else:
            self.info_hash = parsed.info_hash
            trackers = parsed.trackers

        self.swarm = SwarmController(
            self.info_hash, self.peer_id, self.config, self.events,
            metadata_exchange=exchange,
            on_fatal=self._fatal_error,
            on_metadata=self._metadata_fetched,
            on_verified=self._piece_verified,
        )

        if not isinstance(parsed, MagnetLink):
            try:
                self._load(parsed)
            except StorageError as exc:
                self._fatal_error(exc)
                await self.shutdown()
                raise

        self.peer_source = PeerSource(
            self.info_hash, self.peer_id, self.config,
            trackers=trackers,
            manual=manual,
            stats=self._announce_stats,
            on_degraded=self._source_degraded,
        )
        self.peer_source.start()
        self._feed_task = asyncio.create_task(self._feed())

    def _load(self, metadata):
        """Metadata known: build storage, store and scheduler, then go ready."""
        self.metadata = metadata
        if self.config.ephemeral:
            self.storage = MemoryStorage(metadata)
        else:
            self.storage = FileStorage(metadata, self.storage_path, owns_directory=self._owns_storage_path)

        self.store = VerificationStore(metadata, self.storage, self.events)
        if self.config.verify_existing and not self.config.ephemeral:
            self.store.verify_existing()
        self.scheduler = PieceScheduler(metadata, self.store.have, endgame_grace=self.config.endgame_grace)
        self.files = [TorrentFile(self, entry) for entry in metadata.files]

        self.swarm.attach(metadata, self.scheduler, self.store)

        if not self.config.wait_for_selection:
            for f in self.files:
                f.selected = True
        self._selection_changed()

        self._ready = True
        self._ready_signal.set()
        logger.info("%r ready, %d/%d pieces already verified",
                    metadata, self.store.state.finished_pieces, metadata.num_pieces)
        self.events.emit(EventType.READY)
        self._check_done()

    def _metadata_fetched(self, info_bytes: bytes):
        try:
            metadata = parse_info_dict(info_bytes, self.info_hash, self.magnet.announce_list)
            self._load(metadata)
        except (MalformedMetadata, StorageError) as exc:
            self._fatal_error(exc)

    async def _feed(self):
        async for candidate in self.peer_source:
            self.swarm.add_candidate(candidate.host, candidate.port, candidate.source)

    def _announce_stats(self) -> dict:
        left = 0
        if self.metadata is not None:
            left = self.metadata.total_length - self.store.verified_bytes()
        return {"uploaded": 0, "downloaded": self.swarm.downloaded, "left": left}

    def _source_degraded(self, error):
        self.events.emit(EventType.WARNING, error)

    def connect(self, address) -> bool:
        """Connect to a peer given as "host:port" or (host, port)."""
        if self.swarm is None:
            raise RuntimeError("Engine has not been started")
        host, port = parse_peer_address(address) if isinstance(address, str) else address
        return self.swarm.add_candidate(host, int(port)) is not None

    # ------------------------------------------------------------
    #   Progress
    # ------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def done(self) -> bool:
        return self._done

    def percent_complete(self) -> int:
        if self.store is None:
            return 0
        state = self.store.state
        return state.finished_pieces * 100 // state.total_pieces

    def download_speed(self) -> float:
        return self.swarm.download_speed() if self.swarm is not None else 0.0

    def downloaded_bytes(self) -> int:
        if self.swarm is None:
            return 0
        verified = self.store.verified_bytes() if self.store is not None else 0
        return verified + self.swarm.bytes_since_snapshot()

    def completed_files(self) -> List[TorrentFile]:
        return [f for f in self.files if f.is_complete()]

    async def wait_ready(self, timeout: float = None) -> bool:
        await asyncio.wait_for(self._ready_signal.wait(), timeout)
        if self._fatal is not None:
            raise self._fatal
        return self._ready

    async def wait_done(self, timeout: float = None) -> bool:
        """True once every piece is verified; False if shut down first."""
        await asyncio.wait_for(self._finish_signal.wait(), timeout)
        if self._fatal is not None:
            raise self._fatal
        return self._done

    def _piece_verified(self, index: int):
        # handlers of PIECE_VERIFIED have already run for this piece
        self.swarm.snapshot()
        self._update_interest()
        self._check_done()

    def _check_done(self):
        if self._done or self.store is None or not self.store.state.complete:
            return
        self._done = True
        self._finish_signal.set()
        logger.info("Download of %s complete", self.metadata.name)
        self.events.emit(EventType.DONE)

    # ------------------------------------------------------------
    #   File selection and interest
    # ------------------------------------------------------------

    def _selection_changed(self):
        if self.scheduler is None:
            return
        wanted = set()
        for f in self.files:
            if f.selected:
                wanted.update(f.pieces)
        self.scheduler.set_wanted(wanted)
        self._update_interest()
        self.swarm.wake_all()

    def _update_interest(self):
        interested = self.scheduler.wanted_missing() > 0
        if interested == self._interested:
            return
        self._interested = interested
        if interested:
            self.swarm.resume()
            self.events.emit(EventType.INTERESTED)
        else:
            self.swarm.pause()
            self.events.emit(EventType.UNINTERESTED)

    # ------------------------------------------------------------
    #   Failure and shutdown
    # ------------------------------------------------------------

    def _fatal_error(self, exc: TorrentEngineError):
        if self._fatal is not None or self._shutdown_task is not None:
            return
        self._fatal = exc
        logger.error("Fatal error, shutting down: %s", exc)
        self.events.emit(EventType.ERROR, exc)
        self._ready_signal.set()
        self._finish_signal.set()
        self._shutdown_task = asyncio.ensure_future(self._teardown())

    async def shutdown(self, purge: bool = False):
        """
        Stop discovery, close every session and release storage. When this
        returns no session is running and nothing will be written any more.
        With purge, everything persisted for this download is removed too.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._teardown())
        await self._shutdown_task
        if purge:
            self._purge()
        self.events.close()

    async def _teardown(self):
        if self.peer_source is not None:
            await self.peer_source.close()
        if self._feed_task is not None:
            self._feed_task.cancel()
            try:
                await self._feed_task
            except asyncio.CancelledError:
                pass
        if self.swarm is not None:
            await self.swarm.shutdown()
        if self.storage is not None:
            self.storage.close()
        self._ready_signal.set()
        self._finish_signal.set()
        logger.info("Engine %s shut down", self.id)

    def _purge(self):
        if self.storage is not None:
            self.storage.purge()
        elif self.id is not None and not self.config.ephemeral:
            # metadata never arrived, but an earlier run may have left data
            FileStorage(None, self.storage_path, owns_directory=self._owns_storage_path).purge()
