import pytest

from conftest import make_torrent
from torrent_engine.pieces import Bitfield, PieceScheduler
from torrent_engine.torrent import parse_metainfo


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Peer:
    """Schedulers only need hashable peer keys."""

    def __init__(self, name):
        self.name = name

    def __repr__(self):
        return f"Peer({self.name})"


@pytest.fixture
def meta():
    # 4 pieces of 32 KiB (2 blocks each) and a short fifth piece
    raw, _, _ = make_torrent(bytes(4 * 32768 + 5000), 32768)
    return parse_metainfo(raw)


@pytest.fixture
def verified():
    return set()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(meta, verified, clock):
    return PieceScheduler(meta, verified.__contains__, endgame_grace=10.0, clock=clock)


def test_rarest_piece_is_started_first(scheduler, meta):
    a, b, c = Peer("a"), Peer("b"), Peer("c")
    scheduler.peer_bitfield(a, Bitfield.full(meta.num_pieces))
    scheduler.peer_bitfield(b, Bitfield.from_indices(meta.num_pieces, [0, 1, 2, 4]))
    scheduler.peer_bitfield(c, Bitfield.from_indices(meta.num_pieces, [0, 1, 2]))

    reqs = scheduler.next_requests(a, 2)
    # piece 3 is only held by a
    assert [(r.index, r.begin) for r in reqs] == [(3, 0), (3, 16384)]


def test_started_pieces_are_finished_first(scheduler, meta):
    a, b = Peer("a"), Peer("b")
    for p in (a, b):
        scheduler.peer_bitfield(p, Bitfield.full(meta.num_pieces))
    first = scheduler.next_requests(a, 1)
    assert [r.index for r in first] == [0]

    # b continues piece 0 before opening another one
    assert [(r.index, r.begin) for r in scheduler.next_requests(b, 1)] == [(0, 16384)]


def test_short_last_piece_gets_short_block(scheduler, meta):
    a = Peer("a")
    scheduler.peer_have(a, 4)
    reqs = scheduler.next_requests(a, 5)
    assert [(r.index, r.begin, r.length) for r in reqs] == [(4, 0, 5000)]


def test_two_peers_on_same_piece_get_one_assignment(scheduler, meta, verified):
    verified.update({0, 1, 3, 4})
    a, b = Peer("a"), Peer("b")
    for p in (a, b):
        scheduler.peer_bitfield(p, Bitfield.from_indices(meta.num_pieces, [2]))

    got_a = scheduler.next_requests(a, 16)
    got_b = scheduler.next_requests(b, 16)
    assert [(r.index, r.begin) for r in got_a] == [(2, 0), (2, 16384)]
    assert got_b == []
    for r in got_a:
        assert scheduler.holders(r.index, r.begin) == [a]


def test_disconnect_returns_exactly_its_blocks(scheduler, meta):
    a, b = Peer("a"), Peer("b")
    scheduler.peer_bitfield(a, Bitfield.full(meta.num_pieces))
    scheduler.peer_bitfield(b, Bitfield.full(meta.num_pieces))
    scheduler.next_requests(a, 5)
    scheduler.next_requests(b, 2)

    before = scheduler.unassigned_count()
    outstanding = len(scheduler.outstanding(a))
    assert outstanding == 5

    assert scheduler.remove_peer(a) == outstanding
    assert scheduler.unassigned_count() == before + outstanding
    assert scheduler.outstanding(a) == set()
    assert scheduler.availability == [1] * meta.num_pieces


def test_received_blocks_are_not_released(scheduler, meta):
    a = Peer("a")
    scheduler.peer_bitfield(a, Bitfield.full(meta.num_pieces))
    reqs = scheduler.next_requests(a, 3)
    scheduler.block_received(a, reqs[0].index, reqs[0].begin)
    assert scheduler.release_peer(a) == 2


def test_endgame_duplicates_only_after_grace(scheduler, meta, verified, clock):
    verified.update({0, 1, 2, 4})
    slow, fast = Peer("slow"), Peer("fast")
    for p in (slow, fast):
        scheduler.peer_bitfield(p, Bitfield.from_indices(meta.num_pieces, [3]))

    assert len(scheduler.next_requests(slow, 16)) == 2
    assert scheduler.next_requests(fast, 16) == []

    clock.now += 10.0
    dup = scheduler.next_requests(fast, 16)
    assert [(r.index, r.begin) for r in dup] == [(3, 0), (3, 16384)]

    others = scheduler.block_received(fast, 3, 0)
    assert others == [slow]
    assert scheduler.holders(3, 0) == []


def test_never_requests_verified_or_unwanted_pieces(scheduler, meta, verified):
    a = Peer("a")
    scheduler.peer_bitfield(a, Bitfield.full(meta.num_pieces))
    verified.update({0, 2})
    scheduler.set_wanted([0, 1, 2, 3])

    indices = {r.index for r in scheduler.next_requests(a, 100)}
    assert indices == {1, 3}

    scheduler.set_wanted([])
    assert not scheduler.is_interesting(a)
    assert scheduler.wanted_missing() == 0


def test_failed_piece_is_rescheduled(scheduler, meta, verified):
    verified.update({1, 2, 3, 4})
    a = Peer("a")
    scheduler.peer_bitfield(a, Bitfield.full(meta.num_pieces))
    reqs = scheduler.next_requests(a, 16)
    for r in reqs:
        scheduler.block_received(a, r.index, r.begin)
    assert scheduler.next_requests(a, 16) == []

    scheduler.piece_failed(0)
    assert [(r.index, r.begin) for r in scheduler.next_requests(a, 16)] == [(0, 0), (0, 16384)]
