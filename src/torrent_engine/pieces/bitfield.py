"""Bit-per-piece availability map; bits are numbered MSB first within each byte."""
from typing import Iterable, Iterator

from ..errors import ProtocolError


class Bitfield:
    def __init__(self, num_pieces: int, data: bytes = None):
        self.num_pieces = num_pieces
        size = (num_pieces + 7) // 8
        if data is None:
            self._bits = bytearray(size)
        else:
            if len(data) != size:
                raise ProtocolError(f"bitfield is {len(data)} bytes, expected {size}")
            self._bits = bytearray(data)
            spare = size * 8 - num_pieces
            if spare and self._bits[-1] & ((1 << spare) - 1):
                raise ProtocolError("bitfield has spare bits set")

    @classmethod
    def from_indices(cls, num_pieces: int, indices: Iterable[int]) -> "Bitfield":
        bf = cls(num_pieces)
        for idx in indices:
            bf.set(idx)
        return bf

    @classmethod
    def full(cls, num_pieces: int) -> "Bitfield":
        return cls.from_indices(num_pieces, range(num_pieces))

    def _check(self, idx: int):
        if not 0 <= idx < self.num_pieces:
            raise IndexError(f"piece index {idx} out of range")

    def __contains__(self, idx) -> bool:
        if not isinstance(idx, int) or not 0 <= idx < self.num_pieces:
            return False
        return bool(self._bits[idx // 8] & (0x80 >> (idx % 8)))

    def set(self, idx: int):
        self._check(idx)
        self._bits[idx // 8] |= 0x80 >> (idx % 8)

    def clear(self, idx: int):
        self._check(idx)
        self._bits[idx // 8] &= ~(0x80 >> (idx % 8)) & 0xFF

    def __iter__(self) -> Iterator[int]:
        for byte_idx, byte_val in enumerate(self._bits):
            if not byte_val:
                continue
            for bit in range(8):
                if byte_val & (0x80 >> bit):
                    yield byte_idx * 8 + bit

    def count(self) -> int:
        return sum(bin(b).count("1") for b in self._bits)

    def __len__(self):
        return self.count()

    def is_complete(self) -> bool:
        return self.count() == self.num_pieces

    def to_bytes(self) -> bytes:
        return bytes(self._bits)

    def __repr__(self):
        return f"Bitfield({self.count()}/{self.num_pieces})"
