"""
Bencode decoder for torrent metadata, tracker and DHT responses.
"""
from typing import Dict, Tuple

from .structure import BencodeDict, BencodeInt, BencodeList, BencodeString

MAX_DEPTH = 64


class BencodeDecodeError(ValueError):
    """Raised for malformed or truncated Bencoded input."""


class BencodeDecoder:
    """
    Decodes Bencoded byte strings into Bencode wrapper objects.

    While decoding, the byte span of every value in the outermost dictionary
    is recorded in `spans` so callers can hash the exact bytes of e.g. the
    `info` dictionary.
    """
    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.i = 0  # cursor index
        self.depth = 0
        self.spans: Dict[bytes, Tuple[int, int]] = {}

    def decode(self, allow_trailing=False):
        """Decode one value; rejects trailing bytes unless allow_trailing."""
        result = self._parse_value()
        if not allow_trailing and self.i != len(self.data):
            raise BencodeDecodeError(f"Trailing data at index {self.i}")
        return result

    # --------------------------
    # Low-level utilities
    # --------------------------

    def _peek(self):
        if self.i >= len(self.data):
            raise BencodeDecodeError("Unexpected end of input")
        return self.data[self.i:self.i+1]

    def _find(self, token: bytes) -> int:
        pos = self.data.find(token, self.i)
        if pos < 0:
            raise BencodeDecodeError(f"Missing {token!r} after index {self.i}")
        return pos

    # --------------------------
    # Parsing functions
    # --------------------------

    def _parse_value(self):
        ch = self._peek()

        if ch == b'i':
            return self._parse_int()
        if ch.isdigit():
            return self._parse_string()

        if ch in (b'l', b'd'):
            self.depth += 1
            if self.depth > MAX_DEPTH:
                raise BencodeDecodeError("Nesting too deep")
            try:
                return self._parse_list() if ch == b'l' else self._parse_dict()
            finally:
                self.depth -= 1

        raise BencodeDecodeError(f"Invalid token at index {self.i}: {ch!r}")

    def _parse_int(self):
        self.i += 1  # skip 'i'
        end_pos = self._find(b'e')
        digits = self.data[self.i:end_pos]

        magnitude = digits[1:] if digits.startswith(b"-") else digits
        if not magnitude.isdigit():
            raise BencodeDecodeError(f"Invalid integer {digits!r}")
        # i-0e and leading zeros are not canonical
        if digits == b"-0" or (len(magnitude) > 1 and magnitude.startswith(b"0")):
            raise BencodeDecodeError(f"Invalid integer {digits!r}")
        num = int(digits)

        self.i = end_pos + 1
        return BencodeInt(num)

    def _parse_string(self):
        colon = self._find(b':')
        length_bytes = self.data[self.i:colon]
        if not length_bytes.isdigit():
            raise BencodeDecodeError(f"Invalid string length {length_bytes!r}")
        length = int(length_bytes)

        start = colon + 1
        end = start + length
        if end > len(self.data):
            raise BencodeDecodeError("String runs past end of input")
        self.i = end
        return BencodeString(self.data[start:end])

    def _parse_list(self):
        self.i += 1  # skip 'l'
        items = []
        while self._peek() != b'e':
            items.append(self._parse_value())
        self.i += 1
        return BencodeList(items)

    def _parse_dict(self):
        self.i += 1  # skip 'd'
        obj = {}
        top_level = self.depth == 1

        while self._peek() != b'e':
            if not self._peek().isdigit():
                raise BencodeDecodeError(f"Dictionary key must be a string at index {self.i}")
            key = self._parse_string().value
            start = self.i
            obj[key] = self._parse_value()
            if top_level:
                self.spans[key] = (start, self.i)

        self.i += 1
        return BencodeDict(obj)


def decode(data: bytes):
    """Decode a complete Bencoded value."""
    return BencodeDecoder(data).decode()


def decode_prefix(data: bytes):
    """Decode the leading value and return (value, end_index); trailing bytes are allowed."""
    decoder = BencodeDecoder(data)
    value = decoder.decode(allow_trailing=True)
    return value, decoder.i


def decode_with_spans(data: bytes):
    """Decode and also return the byte spans of the top-level dictionary's values."""
    decoder = BencodeDecoder(data)
    value = decoder.decode()
    return value, decoder.spans
