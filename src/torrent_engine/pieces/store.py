import hashlib
import logging
import time
from enum import Enum
from typing import Dict, List, Optional

from ..errors import PieceCorrupt
from ..events import EventType
from .bitfield import Bitfield

logger = logging.getLogger(__name__)


class PieceOutcome(Enum):
    INCOMPLETE = "incomplete"
    VERIFIED_OK = "verified-ok"
    VERIFIED_FAILED = "verified-failed"


class PieceState(Enum):
    EMPTY = "empty"
    PARTIAL = "partial"
    COMPLETE_UNVERIFIED = "complete-unverified"
    VERIFIED = "verified"


class DownloadState:
    """Piece counters for one engine instance."""

    def __init__(self, total_pieces: int):
        self.total_pieces = total_pieces
        self.finished_pieces = 0

    @property
    def complete(self) -> bool:
        return self.finished_pieces == self.total_pieces

    def __repr__(self):
        return f"DownloadState({self.finished_pieces}/{self.total_pieces})"


class Piece:
    def __init__(self, index: int, expected_hash: bytes, length: int):
        self.index = index
        self.expected_hash = expected_hash
        self.length = length
        self.blocks: Dict[int, bytes] = {}
        self.verified = False
        self.verified_at: Optional[float] = None

    def covered(self) -> int:
        """Bytes covered by contiguous blocks starting at offset 0."""
        pos = 0
        while pos in self.blocks and pos < self.length:
            pos += len(self.blocks[pos])
        return pos

    @property
    def state(self) -> PieceState:
        if self.verified:
            return PieceState.VERIFIED
        if not self.blocks:
            return PieceState.EMPTY
        if self.covered() >= self.length:
            return PieceState.COMPLETE_UNVERIFIED
        return PieceState.PARTIAL

    def assemble(self) -> bytes:
        out = bytearray()
        pos = 0
        while pos < self.length:
            block = self.blocks[pos]
            out.extend(block)
            pos += len(block)
        return bytes(out)

    def reset(self):
        self.blocks.clear()


class VerificationStore:
    """
    Holds received blocks until a piece is complete, checks its SHA-1 and
    hands verified pieces to storage. submit_block never awaits, so each call
    runs to completion before any other session touches the same piece.
    """

    def __init__(self, metadata, storage, events=None):
        self.meta = metadata
        self.storage = storage
        self.events = events
        self.state = DownloadState(metadata.num_pieces)
        self.pieces: List[Piece] = [
            Piece(i, metadata.piece_hashes[i], metadata.piece_size(i))
            for i in range(metadata.num_pieces)
        ]
        self._bitfield = Bitfield(metadata.num_pieces)

    def _emit(self, event, *args):
        if self.events is not None:
            self.events.emit(event, *args)

    # -------------------------- queries --------------------------

    def have(self, index: int) -> bool:
        return index in self._bitfield

    def bitfield(self) -> Bitfield:
        return Bitfield(self.meta.num_pieces, self._bitfield.to_bytes())

    def missing(self) -> List[int]:
        return [p.index for p in self.pieces if not p.verified]

    def verified_bytes(self) -> int:
        return sum(p.length for p in self.pieces if p.verified)

    def read_piece(self, index: int) -> Optional[bytes]:
        if not self.have(index):
            return None
        return self.storage.read_piece(index)

    # -------------------------- submission --------------------------

    def submit_block(self, index: int, offset: int, data: bytes) -> PieceOutcome:
        if not 0 <= index < len(self.pieces):
            raise ValueError(f"piece index {index} out of range")
        piece = self.pieces[index]
        if offset < 0 or not data or offset + len(data) > piece.length:
            raise ValueError(f"block {offset}+{len(data)} outside piece {index} of {piece.length} bytes")

        if piece.verified:
            # duplicate delivery (endgame, resubmission) is a no-op
            return PieceOutcome.VERIFIED_OK

        piece.blocks[offset] = bytes(data)
        if piece.covered() < piece.length:
            return PieceOutcome.INCOMPLETE

        assembled = piece.assemble()
        if hashlib.sha1(assembled).digest() != piece.expected_hash:
            logger.warning("Piece %d failed hash check, discarding", index)
            piece.reset()
            self._emit(EventType.PIECE_CORRUPT, PieceCorrupt(index))
            return PieceOutcome.VERIFIED_FAILED

        # storage failures propagate as StorageError before the piece counts as done
        self.storage.write_piece(index, assembled)
        self._mark_verified(piece)
        logger.info("Piece %d verified (%d/%d)", index, self.state.finished_pieces, self.state.total_pieces)
        self._emit(EventType.PIECE_VERIFIED, index, piece.verified_at)
        return PieceOutcome.VERIFIED_OK

    def _mark_verified(self, piece: Piece):
        piece.verified = True
        piece.verified_at = time.time()
        piece.reset()
        self._bitfield.set(piece.index)
        self.state.finished_pieces += 1

    # -------------------------------------------------------
    # Resume: check what an earlier run already persisted
    # -------------------------------------------------------
    def verify_existing(self) -> int:
        logger.info("Verifying existing data for %d pieces", len(self.pieces))
        found = 0
        for piece in self.pieces:
            if piece.verified:
                continue
            data = self.storage.read_piece(piece.index)
            if data is None or len(data) != piece.length:
                continue
            if hashlib.sha1(data).digest() == piece.expected_hash:
                self._mark_verified(piece)
                found += 1
        logger.info("Verification complete. %d/%d pieces available", found, len(self.pieces))
        return found
