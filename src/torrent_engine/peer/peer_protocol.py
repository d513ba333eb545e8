import struct
from typing import NamedTuple, Optional, Tuple

from ..bencode import BencodeDecodeError, BencodeDict, BencodeInt, decode, decode_prefix, encode
from ..errors import HandshakeFailed, ProtocolError
from .message_types import KEEPALIVE, MessageID

PROTOCOL_STR = b"BitTorrent protocol"
HANDSHAKE_LEN = 1 + len(PROTOCOL_STR) + 8 + 20 + 20  # pstrlen + pstr + reserved + info_hash + peer_id

# reserved[5] & 0x10 advertises the extension protocol (BEP 10)
EXTENSION_BYTE = 5
EXTENSION_BIT = 0x10


class Handshake(NamedTuple):
    info_hash: bytes
    peer_id: bytes
    supports_extended: bool


def build_handshake(info_hash: bytes, peer_id: bytes, extended: bool = True) -> bytes:
    """
    Build a handshake message.
    info_hash: 20 bytes
    peer_id:   20 bytes
    """
    if len(info_hash) != 20 or len(peer_id) != 20:
        raise ValueError("info_hash and peer_id must be 20 bytes each")

    reserved = bytearray(8)
    if extended:
        reserved[EXTENSION_BYTE] |= EXTENSION_BIT

    return (
        bytes([len(PROTOCOL_STR)]) +
        PROTOCOL_STR +
        bytes(reserved) +
        info_hash +
        peer_id
    )


def parse_handshake(data: bytes) -> Handshake:
    """
    Parse handshake bytes.
    Raises HandshakeFailed on a protocol mismatch.
    """
    if len(data) < HANDSHAKE_LEN:
        raise HandshakeFailed("Handshake too short")

    pstrlen = data[0]
    pstr = data[1:1+pstrlen]
    if pstr != PROTOCOL_STR:
        raise HandshakeFailed(f"Invalid protocol string: {pstr!r}")

    offset = 1 + pstrlen
    reserved = data[offset: offset + 8]
    offset += 8
    info_hash = data[offset: offset + 20]
    offset += 20
    peer_id = data[offset: offset + 20]

    if len(info_hash) != 20 or len(peer_id) != 20:
        raise HandshakeFailed("Handshake fields malformed")

    return Handshake(info_hash, peer_id, bool(reserved[EXTENSION_BYTE] & EXTENSION_BIT))


# ---- Message framing helpers ----

def build_message(msg_id: MessageID, payload: bytes = b"") -> bytes:
    """
    Frame a message: 4-byte big-endian length + 1-byte id + payload
    length = 1 + len(payload)
    """
    return struct.pack(">IB", 1 + len(payload), int(msg_id)) + payload


def build_keepalive() -> bytes:
    return struct.pack(">I", 0)


def parse_message(stream_bytes: bytes) -> Optional[tuple]:
    """
    Parse one frame from the front of a buffer.
    Returns (msg_id, payload, consumed) or None if the buffer is incomplete.
    """
    if len(stream_bytes) < 4:
        return None

    length = struct.unpack(">I", stream_bytes[:4])[0]
    if length == 0:
        return KEEPALIVE, b"", 4

    total_needed = 4 + length
    if len(stream_bytes) < total_needed:
        return None

    msg_id = stream_bytes[4]
    payload = stream_bytes[5:total_needed]
    return msg_id, payload, total_needed


# ---- Payload builders / parsers ----

def build_request(index: int, begin: int, length: int) -> bytes:
    return struct.pack(">III", index, begin, length)


def parse_request(payload: bytes) -> Tuple[int, int, int]:
    """REQUEST and CANCEL share the index/begin/length layout."""
    if len(payload) != 12:
        raise ProtocolError(f"request/cancel payload must be 12 bytes, got {len(payload)}")
    return struct.unpack(">III", payload)


def build_have(index: int) -> bytes:
    return struct.pack(">I", index)


def parse_have(payload: bytes) -> int:
    if len(payload) != 4:
        raise ProtocolError(f"have payload must be 4 bytes, got {len(payload)}")
    return struct.unpack(">I", payload)[0]


def parse_piece(payload: bytes) -> Tuple[int, int, bytes]:
    if len(payload) < 8:
        raise ProtocolError("piece payload shorter than its header")
    index, begin = struct.unpack(">II", payload[:8])
    return index, begin, payload[8:]


# ---- Extension protocol (BEP 10 / BEP 9) ----

def build_extended(ext_id: int, body: bytes) -> bytes:
    return bytes([ext_id]) + body


def parse_extended(payload: bytes) -> Tuple[int, bytes]:
    if not payload:
        raise ProtocolError("empty extended message")
    return payload[0], payload[1:]


def build_ext_handshake(extensions: dict, metadata_size: Optional[int] = None) -> bytes:
    body = {"m": extensions}
    if metadata_size is not None:
        body["metadata_size"] = metadata_size
    return build_extended(0, encode(body))


def parse_ext_handshake(body: bytes) -> Tuple[dict, Optional[int]]:
    """Return ({extension name: remote id}, metadata_size or None)."""
    try:
        root = decode(body)
    except BencodeDecodeError as exc:
        raise ProtocolError(f"bad extended handshake: {exc}") from exc
    if not isinstance(root, BencodeDict):
        raise ProtocolError("extended handshake must be a dictionary")

    extensions = {}
    m = root.get(b"m")
    if isinstance(m, BencodeDict):
        for name, ext_id in m.value.items():
            if isinstance(ext_id, BencodeInt) and ext_id.value > 0:
                extensions[name.decode("utf-8", "replace")] = ext_id.value

    size = root.get(b"metadata_size")
    metadata_size = size.value if isinstance(size, BencodeInt) and size.value > 0 else None
    return extensions, metadata_size


def build_metadata_message(msg_type: int, piece: int, data: bytes = b"", total_size: Optional[int] = None) -> bytes:
    body = {"msg_type": int(msg_type), "piece": piece}
    if total_size is not None:
        body["total_size"] = total_size
    return encode(body) + data


def parse_metadata_message(body: bytes) -> Tuple[int, int, bytes]:
    """Return (msg_type, piece, trailing data)."""
    try:
        header, end = decode_prefix(body)
    except BencodeDecodeError as exc:
        raise ProtocolError(f"bad ut_metadata message: {exc}") from exc
    if not isinstance(header, BencodeDict):
        raise ProtocolError("ut_metadata header must be a dictionary")
    msg_type = header.get(b"msg_type")
    piece = header.get(b"piece")
    if not isinstance(msg_type, BencodeInt) or not isinstance(piece, BencodeInt):
        raise ProtocolError("ut_metadata header missing msg_type/piece")
    return msg_type.value, piece.value, body[end:]
