"""
torrent_engine: an asyncio BitTorrent download engine.

    async with Engine({"manualPeers": ["10.0.0.5:6881"]}) as engine:
        engine.on(EventType.DONE, lambda: print("done"))
        await engine.start(open("file.torrent", "rb").read())
        await engine.wait_done()
"""
from .config import EngineConfig
from .engine import Engine
from .errors import (
    ConfigurationError, ConnectionLimitExceeded, FileIncomplete, HandshakeFailed, MalformedMetadata,
    PeerSourceDegraded, PieceCorrupt, RequestTimeout, StorageError, TorrentEngineError,
)
from .events import EventType, Subscription
from .files import TorrentFile
from .pieces import PieceOutcome
from .swarm import SwarmState
from .torrent import TorrentMetadata

__version__ = "0.1.0"

__all__ = [
    'Engine', 'EngineConfig', 'EventType', 'Subscription', 'TorrentFile', 'TorrentMetadata',
    'PieceOutcome', 'SwarmState',
    'TorrentEngineError', 'ConfigurationError', 'MalformedMetadata', 'StorageError', 'FileIncomplete',
    'HandshakeFailed', 'PeerSourceDegraded', 'PieceCorrupt', 'RequestTimeout', 'ConnectionLimitExceeded',
]
