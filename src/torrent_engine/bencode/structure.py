"""
Data structures for representing Bencoded types.
"""
__all__ = [
    "BencodeType",
    "BencodeInt",
    "BencodeString",
    "BencodeList",
    "BencodeDict",
    "to_python",
]


class BencodeType:
    """Base class for all Bencode data types."""
    value = None

    def __eq__(self, other):
        if isinstance(other, BencodeType):
            return type(self) is type(other) and self.value == other.value
        return NotImplemented

    def __hash__(self):
        # only ints and strings are hashable; containers raise TypeError like list/dict
        return hash((type(self).__name__, self.value))

    def __repr__(self):
        return f"{type(self).__name__}({self.value!r})"


class BencodeInt(BencodeType):
    """Represents a Bencoded integer."""
    def __init__(self, value: int):
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError("BencodeInt requires an integer.")
        self.value = value


class BencodeString(BencodeType):
    """Represents a Bencoded byte string."""
    def __init__(self, value: bytes):
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError("BencodeString requires bytes.")
        self.value = bytes(value)

    def text(self, errors="strict") -> str:
        return self.value.decode("utf-8", errors)


class BencodeList(BencodeType):
    """Represents a Bencoded list."""
    def __init__(self, value: list):
        if not isinstance(value, list):
            raise TypeError("BencodeList requires a list.")
        self.value = value


class BencodeDict(BencodeType):
    """Represents a Bencoded dictionary with raw byte keys."""
    def __init__(self, value: dict):
        if not isinstance(value, dict):
            raise TypeError("BencodeDict requires a dict.")
        for k in value.keys():
            if not isinstance(k, (bytes, bytearray)):
                raise TypeError("BencodeDict keys must be bytes.")
        self.value = value

    def get(self, key: bytes, default=None):
        return self.value.get(key, default)

    def __contains__(self, key):
        return key in self.value


def to_python(obj):
    """Unwrap Bencode types recursively into int / bytes / list / dict."""
    if isinstance(obj, BencodeList):
        return [to_python(v) for v in obj.value]
    if isinstance(obj, BencodeDict):
        return {k: to_python(v) for k, v in obj.value.items()}
    if isinstance(obj, BencodeType):
        return obj.value
    return obj
