from .bitfield import Bitfield
from .scheduler import BlockRequest, PieceScheduler
from .store import DownloadState, Piece, PieceOutcome, PieceState, VerificationStore

__all__ = [
    "Bitfield",
    "BlockRequest",
    "PieceScheduler",
    "DownloadState",
    "Piece",
    "PieceOutcome",
    "PieceState",
    "VerificationStore",
]
