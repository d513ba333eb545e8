"""
Bencode encoder for torrent metadata, extension handshakes and KRPC messages.
"""
from .structure import BencodeDict, BencodeInt, BencodeList, BencodeString, BencodeType


class BencodeEncodeError(TypeError):
    """Raised for values that have no Bencode representation."""


def encode(obj) -> bytes:
    """Encodes a Python object or BencodeType into bencoded bytes."""
    out = bytearray()
    _encode_into(obj, out)
    return bytes(out)


def _encode_into(obj, out: bytearray):
    if isinstance(obj, BencodeType):
        if isinstance(obj, BencodeString):
            _encode_bytes(obj.value, out)
        elif isinstance(obj, BencodeInt):
            out += b"i%de" % obj.value
        elif isinstance(obj, BencodeList):
            _encode_list(obj.value, out)
        elif isinstance(obj, BencodeDict):
            _encode_dict(obj.value, out)
        return

    # bool is an int subclass but has no meaning in bencode
    if isinstance(obj, bool):
        raise BencodeEncodeError("Cannot bencode a bool")
    if isinstance(obj, int):
        out += b"i%de" % obj
    elif isinstance(obj, (bytes, bytearray, memoryview)):
        _encode_bytes(bytes(obj), out)
    elif isinstance(obj, str):
        _encode_bytes(obj.encode("utf-8"), out)
    elif isinstance(obj, (list, tuple)):
        _encode_list(obj, out)
    elif isinstance(obj, dict):
        _encode_dict(obj, out)
    else:
        raise BencodeEncodeError(f"Cannot bencode object of type {type(obj).__name__}")


# ------------------------------------------------------------
#   Encoding primitives
# ------------------------------------------------------------

def _encode_bytes(b: bytes, out: bytearray):
    out += str(len(b)).encode()
    out += b":"
    out += b


def _encode_list(items, out: bytearray):
    out += b"l"
    for item in items:
        _encode_into(item, out)
    out += b"e"


def _encode_dict(d: dict, out: bytearray):
    """Keys are sorted as raw bytes, as the format requires."""
    def key_to_bytes(k):
        return k if isinstance(k, bytes) else k.encode("utf-8")

    out += b"d"
    for key in sorted(d.keys(), key=key_to_bytes):
        _encode_bytes(key_to_bytes(key), out)
        _encode_into(d[key], out)
    out += b"e"
