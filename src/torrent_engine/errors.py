"""
Exception hierarchy for the torrent engine.

Only MalformedMetadata (raised from Engine.start) and StorageError are fatal.
Every other error type describes a per-peer or per-source failure: it is
logged, emitted as a WARNING event and the affected unit is discarded or
retried.
"""
from typing import Any, Dict, Optional


class TorrentEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ConfigurationError(TorrentEngineError, ValueError):
    """Invalid engine options."""


class MalformedMetadata(TorrentEngineError):
    """The torrent descriptor or magnet link cannot be used. Fatal."""


class StorageError(TorrentEngineError):
    """Unrecoverable I/O failure in the piece storage layer. Fatal."""


class FileIncomplete(TorrentEngineError):
    """A file was read before all of its pieces were verified."""


# ---- non-fatal, per peer ----

class PeerError(TorrentEngineError):
    """Base for failures isolated to a single peer connection."""

    def __init__(self, message: str, address=None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.address = address


class PeerUnreachable(PeerError):
    """TCP connect failed or timed out."""


class HandshakeFailed(PeerError):
    """Protocol string or info-hash mismatch, or no handshake in time."""


class ProtocolError(PeerError):
    """The peer sent a frame that cannot be parsed."""


class PeerMisbehaving(PeerError):
    """Misbehavior score crossed the threshold; the session was closed."""


class RequestTimeout(PeerError):
    """Outstanding block requests went unanswered and were reassigned."""


class ConnectionLimitExceeded(PeerError):
    """A candidate was dropped because the swarm is at its connection ceiling."""


# ---- non-fatal, per piece / per source ----

class PieceCorrupt(TorrentEngineError):
    """A completed piece did not match its expected hash."""

    def __init__(self, index: int):
        super().__init__(f"Piece {index} failed hash check", {"index": index})
        self.index = index


class TrackerError(TorrentEngineError):
    """Tracker announce failed or returned a failure reason."""


class DHTError(TorrentEngineError):
    """DHT lookup could not run (e.g. no bootstrap node resolvable)."""


class PeerSourceDegraded(TorrentEngineError):
    """One peer discovery source failed; the others keep running."""

    def __init__(self, source: str, cause: BaseException):
        super().__init__(f"Peer source {source!r} degraded: {cause}", {"source": source})
        self.source = source
        self.cause = cause
