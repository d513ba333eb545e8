"""
Assembles the info dictionary of a magnet link from ut_metadata pieces
(BEP 9) served by several peers.
"""
import hashlib
import logging
import time
from typing import Dict, Optional

from .message_types import METADATA_PIECE_LEN

logger = logging.getLogger(__name__)

MAX_METADATA_SIZE = 16 * 1024 * 1024


class MetadataExchange:
    def __init__(self, info_hash: bytes, request_timeout: float = 30.0, clock=time.monotonic):
        self.info_hash = info_hash
        self.request_timeout = request_timeout
        self.clock = clock
        self.size: Optional[int] = None
        self.pieces: Dict[int, bytes] = {}
        self.pending: Dict[int, float] = {}  # piece -> time requested
        self.result: Optional[bytes] = None

    @property
    def num_pieces(self) -> int:
        if self.size is None:
            return 0
        return -(-self.size // METADATA_PIECE_LEN)

    def offer_size(self, size: int) -> bool:
        """Accept a peer's advertised metadata_size; the first plausible one wins."""
        if self.result is not None or not 0 < size <= MAX_METADATA_SIZE:
            return False
        if self.size is None:
            self.size = size
            return True
        return self.size == size

    def next_piece(self) -> Optional[int]:
        """Next metadata piece to ask for, skipping ones requested recently."""
        if self.size is None or self.result is not None:
            return None
        now = self.clock()
        for piece in range(self.num_pieces):
            if piece in self.pieces:
                continue
            sent = self.pending.get(piece)
            if sent is None or now - sent >= self.request_timeout:
                self.pending[piece] = now
                return piece
        return None

    def rejected(self, piece: int):
        self.pending.pop(piece, None)

    def add_piece(self, piece: int, data: bytes) -> Optional[bytes]:
        """
        Store one piece. Returns the full info dictionary once all pieces are in
        and hash to the expected info-hash; a mismatch starts over.
        """
        if self.size is None or self.result is not None or not 0 <= piece < self.num_pieces:
            return None
        expected = min(METADATA_PIECE_LEN, self.size - piece * METADATA_PIECE_LEN)
        if len(data) != expected:
            logger.debug("Metadata piece %d has %d bytes, expected %d", piece, len(data), expected)
            self.pending.pop(piece, None)
            return None

        self.pieces[piece] = bytes(data)
        self.pending.pop(piece, None)
        if len(self.pieces) < self.num_pieces:
            return None

        blob = b"".join(self.pieces[i] for i in range(self.num_pieces))
        if hashlib.sha1(blob).digest() != self.info_hash:
            logger.warning("Fetched metadata does not match the info-hash, refetching")
            # keep the agreed size so sessions start over from piece 0
            self.pieces.clear()
            self.pending.clear()
            return None
        self.result = blob
        return blob
