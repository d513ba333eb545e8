import hashlib
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from ..bencode import BencodeDecodeError, BencodeDict, BencodeInt, BencodeList, BencodeString
from ..bencode import decode, decode_with_spans
from ..errors import MalformedMetadata

HASH_LEN = 20


@dataclass(frozen=True)
class FileEntry:
    """One file of the torrent, placed at `offset` in the concatenated piece stream."""
    path: str
    length: int
    offset: int

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class TorrentMetadata:
    info_hash: bytes
    name: str
    piece_length: int
    piece_hashes: Tuple[bytes, ...]
    files: Tuple[FileEntry, ...]
    announce_list: Tuple[Tuple[str, ...], ...] = ()
    info_bytes: bytes = b""
    is_multi: bool = False

    @property
    def total_length(self) -> int:
        return sum(f.length for f in self.files)

    @property
    def num_pieces(self) -> int:
        return len(self.piece_hashes)

    @property
    def trackers(self) -> Tuple[str, ...]:
        return tuple(url for tier in self.announce_list for url in tier)

    def piece_size(self, index: int) -> int:
        if not 0 <= index < self.num_pieces:
            raise IndexError(f"Piece index {index} out of range")
        if index < self.num_pieces - 1:
            return self.piece_length
        return self.total_length - self.piece_length * (self.num_pieces - 1)

    def pieces_for_range(self, start: int, end: int) -> range:
        """Indices of the pieces overlapping the byte range [start, end)."""
        if end <= start:
            return range(0)
        return range(start // self.piece_length, (end - 1) // self.piece_length + 1)

    def __repr__(self):
        return (
            f"TorrentMetadata(name={self.name!r}, files={len(self.files)}, "
            f"pieces={self.num_pieces}, info_hash={self.info_hash.hex()})"
        )


# -------------------------- field helpers --------------------------

def _require(d: BencodeDict, key: bytes, kind, where: str):
    value = d.get(key)
    if not isinstance(value, kind):
        raise MalformedMetadata(f"{where}: missing or invalid {key.decode()!r}")
    return value


def _text(value: BencodeString, where: str) -> str:
    try:
        return value.text()
    except UnicodeDecodeError as exc:
        raise MalformedMetadata(f"{where}: not valid UTF-8") from exc


def _path_component(part, where: str) -> str:
    if not isinstance(part, BencodeString):
        raise MalformedMetadata(f"{where}: path component must be a string")
    text = _text(part, where)
    if text in ("", ".", "..") or "/" in text or "\\" in text:
        raise MalformedMetadata(f"{where}: unsafe path component {text!r}")
    return text


def _parse_announce(root: BencodeDict) -> Tuple[Tuple[str, ...], ...]:
    tiers = []
    ann_list = root.get(b"announce-list")
    if isinstance(ann_list, BencodeList):
        for tier in ann_list.value:
            if not isinstance(tier, BencodeList):
                continue
            urls = tuple(u.text("replace") for u in tier.value if isinstance(u, BencodeString))
            if urls:
                tiers.append(urls)

    ann = root.get(b"announce")
    if isinstance(ann, BencodeString):
        url = ann.text("replace")
        if not any(url in tier for tier in tiers):
            tiers.insert(0, (url,))
    return tuple(tiers)


# -------------------------- parsing --------------------------

def parse_info_dict(info_bytes: bytes, expected_info_hash: Optional[bytes] = None,
                    announce_list: Sequence[Sequence[str]] = ()) -> TorrentMetadata:
    """
    Build TorrentMetadata from the raw bencoded `info` dictionary.

    Used directly for metadata fetched from peers (magnet links), where the
    SHA-1 of the bytes must equal the info-hash the link advertised.
    """
    info_hash = hashlib.sha1(info_bytes).digest()
    if expected_info_hash is not None and info_hash != expected_info_hash:
        raise MalformedMetadata(
            "Info-hash mismatch",
            {"expected": expected_info_hash.hex(), "actual": info_hash.hex()},
        )

    try:
        info = decode(info_bytes)
    except BencodeDecodeError as exc:
        raise MalformedMetadata(f"info dictionary is not valid bencode: {exc}") from exc
    if not isinstance(info, BencodeDict):
        raise MalformedMetadata("info must be a dictionary")

    # ------------------ NAME ------------------
    name = _path_component(_require(info, b"name", BencodeString, "info"), "info.name")

    # ------------------ PIECE LENGTH ------------------
    piece_length = _require(info, b"piece length", BencodeInt, "info").value
    if piece_length <= 0:
        raise MalformedMetadata(f"piece length must be positive, got {piece_length}")

    # ------------------ PIECES ------------------
    raw_pieces = _require(info, b"pieces", BencodeString, "info").value
    if len(raw_pieces) % HASH_LEN:
        raise MalformedMetadata(f"pieces length {len(raw_pieces)} is not a multiple of {HASH_LEN}")
    piece_hashes = tuple(raw_pieces[i:i + HASH_LEN] for i in range(0, len(raw_pieces), HASH_LEN))

    # ------------------ FILES ------------------
    files = []
    offset = 0
    if b"files" in info:
        entries = _require(info, b"files", BencodeList, "info").value
        if not entries:
            raise MalformedMetadata("info.files is empty")
        for n, f_entry in enumerate(entries):
            where = f"info.files[{n}]"
            if not isinstance(f_entry, BencodeDict):
                raise MalformedMetadata(f"{where} must be a dictionary")
            length = _require(f_entry, b"length", BencodeInt, where).value
            parts = _require(f_entry, b"path", BencodeList, where).value
            if not parts:
                raise MalformedMetadata(f"{where}: empty path")
            path = "/".join([name] + [_path_component(p, where) for p in parts])
            if length < 0:
                raise MalformedMetadata(f"{where}: negative length")
            files.append(FileEntry(path=path, length=length, offset=offset))
            offset += length
    else:
        length = _require(info, b"length", BencodeInt, "info").value
        if length < 0:
            raise MalformedMetadata("info.length is negative")
        files.append(FileEntry(path=name, length=length, offset=0))
        offset = length

    total_length = offset
    if total_length <= 0:
        raise MalformedMetadata("torrent has no content")

    expected_pieces = math.ceil(total_length / piece_length)
    if len(piece_hashes) != expected_pieces:
        raise MalformedMetadata(
            f"expected {expected_pieces} piece hashes for {total_length} bytes, got {len(piece_hashes)}",
            {"total_length": total_length, "piece_length": piece_length},
        )
    for f in files:
        if f.offset < 0 or f.end > total_length:
            raise MalformedMetadata(f"file {f.path!r} lies outside the content range")

    return TorrentMetadata(
        info_hash=info_hash,
        name=name,
        piece_length=piece_length,
        piece_hashes=piece_hashes,
        files=tuple(files),
        announce_list=tuple(tuple(t) for t in announce_list),
        info_bytes=bytes(info_bytes),
        is_multi=b"files" in info,
    )


def parse_metainfo(raw: bytes, expected_info_hash: Optional[bytes] = None) -> TorrentMetadata:
    """Parse a complete .torrent file."""
    try:
        root, spans = decode_with_spans(raw)
    except BencodeDecodeError as exc:
        raise MalformedMetadata(f"descriptor is not valid bencode: {exc}") from exc

    if not isinstance(root, BencodeDict):
        raise MalformedMetadata("Invalid torrent: root must be a dictionary")
    if b"info" not in spans:
        raise MalformedMetadata("Torrent missing 'info' dictionary")

    start, end = spans[b"info"]
    return parse_info_dict(raw[start:end], expected_info_hash, _parse_announce(root))


def parse_descriptor(source: Union[bytes, bytearray, str]):
    """
    Resolve an opaque descriptor: a magnet URI string becomes a MagnetLink,
    bytes are parsed as a .torrent file.
    """
    from .magnet import is_magnet, parse_magnet

    if isinstance(source, str):
        if is_magnet(source):
            return parse_magnet(source)
        raise MalformedMetadata("String descriptors must be magnet URIs")
    if isinstance(source, (bytes, bytearray)):
        return parse_metainfo(bytes(source))
    raise MalformedMetadata(f"Unsupported descriptor type {type(source).__name__}")
