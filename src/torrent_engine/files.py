import logging
from typing import Iterator

from .errors import FileIncomplete

logger = logging.getLogger(__name__)

DEFAULT_CHUNK = 64 * 1024


class TorrentFile:
    """
    One file of a download. Bytes come straight out of verified pieces, so
    iter_bytes() can be called as often as needed once the file is complete.
    """

    def __init__(self, engine, entry):
        self._engine = engine
        self.entry = entry
        self.path = entry.path
        self.name = entry.path.rsplit("/", 1)[-1]
        self.length = entry.length
        self.offset = entry.offset
        self.selected = False

    def __repr__(self):
        return f"TorrentFile({self.path!r}, {self.length} bytes, selected={self.selected})"

    @property
    def pieces(self) -> range:
        return self._engine.metadata.pieces_for_range(self.offset, self.offset + self.length)

    def select(self):
        if not self.selected:
            self.selected = True
            self._engine._selection_changed()

    def deselect(self):
        if self.selected:
            self.selected = False
            self._engine._selection_changed()

    def is_complete(self) -> bool:
        store = self._engine.store
        return store is not None and all(store.have(i) for i in self.pieces)

    def progress(self) -> float:
        """Fraction of this file's pieces that are verified."""
        pieces = self.pieces
        if not len(pieces):
            return 1.0
        store = self._engine.store
        if store is None:
            return 0.0
        return sum(1 for i in pieces if store.have(i)) / len(pieces)

    def iter_bytes(self, chunk_size: int = DEFAULT_CHUNK) -> Iterator[bytes]:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not self.is_complete():
            raise FileIncomplete(f"{self.path} is not fully downloaded", {"path": self.path})
        return self._generate(chunk_size)

    def _generate(self, chunk_size: int):
        meta = self._engine.metadata
        store = self._engine.store
        pos = self.offset
        end = self.offset + self.length
        for index in self.pieces:
            data = store.read_piece(index)
            if data is None:
                raise FileIncomplete(f"piece {index} of {self.path} is no longer available", {"path": self.path})
            piece_start = index * meta.piece_length
            lo = max(pos, piece_start) - piece_start
            hi = min(end, piece_start + len(data)) - piece_start
            view = memoryview(data)[lo:hi]
            for i in range(0, len(view), chunk_size):
                yield bytes(view[i:i + chunk_size])
            pos = piece_start + hi
