"""
Piece persistence.

FileStorage lays verified pieces out as the torrent's files under one
directory, so partial downloads can be resumed and verified on the next load.
MemoryStorage keeps everything in process (ephemeral mode).
"""
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)


class MemoryStorage:
    def __init__(self, metadata):
        self.meta = metadata
        self._pieces: Dict[int, bytes] = {}

    def write_piece(self, index: int, data: bytes):
        self._pieces[index] = bytes(data)

    def read_piece(self, index: int) -> Optional[bytes]:
        return self._pieces.get(index)

    def close(self):
        pass

    def purge(self):
        self._pieces.clear()


class FileStorage:
    def __init__(self, metadata, directory, owns_directory: bool = False):
        self.meta = metadata
        self.directory = Path(directory)
        # True when the directory exists only for this download
        self.owns_directory = owns_directory

    def _path(self, entry) -> Path:
        return self.directory / entry.path

    def _overlaps(self, start: int, length: int):
        """Yield (file entry, offset within file, offset within range, count)."""
        end = start + length
        for f in self.meta.files:
            if f.length == 0 or start >= f.end or end <= f.offset:
                continue
            lo = max(start, f.offset)
            hi = min(end, f.end)
            yield f, lo - f.offset, lo - start, hi - lo

    # -------------------------------------------------------
    # Write piece bytes into correct file(s)
    # -------------------------------------------------------
    def write_piece(self, index: int, data: bytes):
        piece_start = index * self.meta.piece_length
        try:
            for f, file_pos, src_pos, count in self._overlaps(piece_start, len(data)):
                out_path = self._path(f)
                os.makedirs(out_path.parent, exist_ok=True)
                mode = "r+b" if out_path.exists() else "wb"
                with out_path.open(mode) as fp:
                    fp.seek(file_pos)
                    fp.write(data[src_pos: src_pos + count])
        except OSError as exc:
            raise StorageError(f"Could not write piece {index}: {exc}", {"index": index}) from exc

    def read_piece(self, index: int) -> Optional[bytes]:
        """Return the stored bytes for a piece, or None if any part is missing."""
        piece_start = index * self.meta.piece_length
        piece_len = self.meta.piece_size(index)
        data = bytearray()
        for f, file_pos, _, count in self._overlaps(piece_start, piece_len):
            path = self._path(f)
            try:
                with path.open("rb") as fp:
                    fp.seek(file_pos)
                    chunk = fp.read(count)
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise StorageError(f"Could not read piece {index}: {exc}", {"index": index}) from exc
            if len(chunk) != count:
                return None
            data.extend(chunk)
        if len(data) != piece_len:
            return None
        return bytes(data)

    def close(self):
        pass

    def purge(self):
        """
        Remove every byte persisted for this download. A directory the engine
        created for the download goes entirely; in a caller's directory only
        the torrent's own files and the folders they leave empty are removed.
        """
        if not self.directory.exists():
            return
        try:
            if self.owns_directory:
                logger.info("Purging piece storage at %s", self.directory)
                shutil.rmtree(self.directory)
                return
            if self.meta is None:
                logger.warning("No metadata for %s, leaving caller directory untouched", self.directory)
                return
            logger.info("Purging torrent files under %s", self.directory)
            for entry in self.meta.files:
                path = self._path(entry)
                if path.is_file():
                    path.unlink()
                self._remove_empty_parents(path.parent)
        except OSError as exc:
            raise StorageError(f"Could not purge {self.directory}: {exc}") from exc

    def _remove_empty_parents(self, folder: Path):
        root = self.directory.resolve()
        folder = folder.resolve()
        while folder != root and root in folder.parents:
            if not folder.is_dir() or any(folder.iterdir()):
                return
            folder.rmdir()
            folder = folder.parent
