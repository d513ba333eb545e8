"""
Block request scheduling.

Peers are opaque hashable keys here (the swarm passes WireSession objects).
Every method is synchronous, so with a single event loop each call is atomic
with respect to all other sessions.
"""
import bisect
import logging
import time
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from ..peer.message_types import BLOCK_LEN
from .bitfield import Bitfield

logger = logging.getLogger(__name__)

BlockKey = Tuple[int, int]  # (piece index, begin)


class BlockRequest(NamedTuple):
    index: int
    begin: int
    length: int

    @property
    def key(self) -> BlockKey:
        return self.index, self.begin


class _PieceProgress:
    """Block bookkeeping for a piece that has been started."""
    __slots__ = ("index", "length", "unrequested", "requested", "received")

    def __init__(self, index: int, length: int, block_len: int):
        self.index = index
        self.length = length
        self.unrequested: List[int] = list(range(0, length, block_len))
        # begin -> {peer: time the request was issued}
        self.requested: Dict[int, Dict[object, float]] = {}
        self.received: Set[int] = set()


class PieceScheduler:
    def __init__(self, metadata, is_verified: Callable[[int], bool],
                 block_len: int = BLOCK_LEN, endgame_grace: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.meta = metadata
        self.num_pieces = metadata.num_pieces
        self.is_verified = is_verified
        self.block_len = block_len
        self.endgame_grace = endgame_grace
        self.clock = clock

        # number of connected peers advertising each piece (rarest-first)
        self.availability = [0] * self.num_pieces
        self._peer_bits: Dict[object, Bitfield] = {}

        self._wanted: Set[int] = set(range(self.num_pieces))
        self._progress: Dict[int, _PieceProgress] = {}
        self._by_peer: Dict[object, Set[BlockKey]] = {}

    # -------------------------- availability --------------------------

    def peer_bitfield(self, peer, bitfield: Bitfield):
        old = self._peer_bits.get(peer)
        if old is not None:
            for idx in old:
                self.availability[idx] -= 1
        bits = Bitfield(self.num_pieces, bitfield.to_bytes())
        self._peer_bits[peer] = bits
        for idx in bits:
            self.availability[idx] += 1

    def peer_have(self, peer, index: int):
        bits = self._peer_bits.setdefault(peer, Bitfield(self.num_pieces))
        if index not in bits:
            bits.set(index)
            self.availability[index] += 1

    def remove_peer(self, peer) -> int:
        """Forget a disconnected peer; returns how many blocks went back to the pool."""
        released = self.release_peer(peer)
        bits = self._peer_bits.pop(peer, None)
        if bits is not None:
            for idx in bits:
                self.availability[idx] -= 1
        return released

    # -------------------------- wanted set --------------------------

    def set_wanted(self, indices: Optional[Iterable[int]]):
        """Restrict scheduling to these pieces; None means every piece."""
        if indices is None:
            self._wanted = set(range(self.num_pieces))
        else:
            self._wanted = {i for i in indices if 0 <= i < self.num_pieces}

    def _eligible(self, index: int) -> bool:
        return index in self._wanted and not self.is_verified(index)

    def wanted_missing(self) -> int:
        return sum(1 for i in self._wanted if not self.is_verified(i))

    def is_interesting(self, peer) -> bool:
        bits = self._peer_bits.get(peer)
        if bits is None:
            return False
        return any(self._eligible(i) for i in bits)

    # -------------------------- selection --------------------------

    def next_requests(self, peer, capacity: int) -> List[BlockRequest]:
        bits = self._peer_bits.get(peer)
        if bits is None or capacity <= 0:
            return []

        now = self.clock()
        out: List[BlockRequest] = []

        # 1. finish what is already started, most nearly complete first
        started = [
            p for p in self._progress.values()
            if p.unrequested and p.index in bits and self._eligible(p.index)
        ]
        started.sort(key=lambda p: (len(p.unrequested), p.index))
        for p in started:
            if len(out) >= capacity:
                return out
            self._take(p, peer, capacity - len(out), now, out)

        # 2. start new pieces, rarest first
        if len(out) < capacity:
            fresh = [i for i in bits if i not in self._progress and self._eligible(i)]
            fresh.sort(key=lambda i: (self.availability[i], i))
            for idx in fresh:
                if len(out) >= capacity:
                    return out
                p = _PieceProgress(idx, self.meta.piece_size(idx), self.block_len)
                self._progress[idx] = p
                self._take(p, peer, capacity - len(out), now, out)

        # 3. endgame: duplicate blocks whose holder has sat on them past the grace period
        if len(out) < capacity:
            self._take_endgame(peer, bits, capacity, now, out)

        return out

    def _assign(self, p: _PieceProgress, begin: int, peer, now: float, out: List[BlockRequest]):
        p.requested.setdefault(begin, {})[peer] = now
        self._by_peer.setdefault(peer, set()).add((p.index, begin))
        out.append(BlockRequest(p.index, begin, min(self.block_len, p.length - begin)))

    def _take(self, p: _PieceProgress, peer, limit: int, now: float, out: List[BlockRequest]):
        while p.unrequested and limit > 0:
            begin = p.unrequested.pop(0)
            self._assign(p, begin, peer, now, out)
            limit -= 1

    def _take_endgame(self, peer, bits: Bitfield, capacity: int, now: float, out: List[BlockRequest]):
        candidates = []
        for p in self._progress.values():
            if p.index not in bits or not self._eligible(p.index):
                continue
            for begin, holders in p.requested.items():
                if peer in holders:
                    continue
                if now - min(holders.values()) >= self.endgame_grace:
                    candidates.append((len(holders), p.index, begin, p))
        candidates.sort(key=lambda c: c[:3])
        for _, _, begin, p in candidates:
            if len(out) >= capacity:
                break
            logger.debug("Endgame: duplicating block %d/%d", p.index, begin)
            self._assign(p, begin, peer, now, out)

    # -------------------------- completion / release --------------------------

    def block_received(self, peer, index: int, begin: int) -> List[object]:
        """Record a delivered block; returns the other peers still assigned to it."""
        p = self._progress.get(index)
        if p is None:
            return []
        holders = p.requested.pop(begin, {})
        for h in holders:
            self._by_peer.get(h, set()).discard((index, begin))
        if begin in p.unrequested:
            p.unrequested.remove(begin)
        p.received.add(begin)
        return [h for h in holders if h is not peer]

    def release(self, peer, keys: Iterable[BlockKey]) -> int:
        """Return some of a peer's assignments to the unassigned pool."""
        owned = self._by_peer.get(peer)
        if not owned:
            return 0
        released = 0
        for key in list(keys):
            if key not in owned:
                continue
            owned.discard(key)
            index, begin = key
            p = self._progress.get(index)
            if p is None:
                continue
            holders = p.requested.get(begin)
            if holders is None:
                continue
            holders.pop(peer, None)
            if not holders:
                del p.requested[begin]
                if begin not in p.received:
                    bisect.insort(p.unrequested, begin)
                    released += 1
        return released

    def release_peer(self, peer) -> int:
        keys = self._by_peer.get(peer)
        if not keys:
            self._by_peer.pop(peer, None)
            return 0
        released = self.release(peer, list(keys))
        self._by_peer.pop(peer, None)
        return released

    def _drop_progress(self, index: int):
        p = self._progress.pop(index, None)
        if p is None:
            return
        for begin, holders in p.requested.items():
            for h in holders:
                self._by_peer.get(h, set()).discard((index, begin))

    def piece_verified(self, index: int):
        self._drop_progress(index)

    def piece_failed(self, index: int):
        """A hash failure puts the whole piece back up for grabs."""
        self._drop_progress(index)

    # -------------------------- inspection --------------------------

    def outstanding(self, peer) -> Set[BlockKey]:
        return set(self._by_peer.get(peer, ()))

    def holders(self, index: int, begin: int) -> List[object]:
        p = self._progress.get(index)
        if p is None:
            return []
        return list(p.requested.get(begin, {}))

    def _block_count(self, index: int) -> int:
        return -(-self.meta.piece_size(index) // self.block_len)

    def unassigned_count(self) -> int:
        """Blocks of unverified pieces that nobody has been asked for."""
        total = 0
        for idx in range(self.num_pieces):
            if self.is_verified(idx):
                continue
            p = self._progress.get(idx)
            total += len(p.unrequested) if p is not None else self._block_count(idx)
        return total
