import pytest

from conftest import make_torrent
from torrent_engine.errors import PieceCorrupt
from torrent_engine.events import EventBus, EventType
from torrent_engine.pieces import PieceOutcome, PieceState, VerificationStore
from torrent_engine.storage import FileStorage, MemoryStorage
from torrent_engine.torrent import parse_metainfo

BLOCK = 16384


def submit_piece(store, meta, content, index, corrupt=False):
    start = index * meta.piece_length
    data = bytearray(content[start:start + meta.piece_size(index)])
    if corrupt:
        data[-1] ^= 0x01
    outcome = None
    for begin in range(0, len(data), BLOCK):
        outcome = store.submit_block(index, begin, bytes(data[begin:begin + BLOCK]))
    return outcome


@pytest.fixture
def meta(torrent):
    return parse_metainfo(torrent[0])


@pytest.fixture
def bus():
    return EventBus()


def test_piece_verifies_after_last_block(meta, content, bus):
    verified = []
    bus.subscribe(EventType.PIECE_VERIFIED, lambda i, at: verified.append((i, at)))
    store = VerificationStore(meta, MemoryStorage(meta), bus)

    assert store.submit_block(0, 0, content[:BLOCK]) is PieceOutcome.INCOMPLETE
    assert store.pieces[0].state is PieceState.PARTIAL
    assert store.submit_block(0, BLOCK, content[BLOCK:2 * BLOCK]) is PieceOutcome.VERIFIED_OK

    assert store.have(0)
    assert store.state.finished_pieces == 1
    assert verified[0][0] == 0 and verified[0][1] > 0
    assert store.read_piece(0) == content[:2 * BLOCK]


def test_resubmitting_verified_piece_is_idempotent(meta, content, bus):
    store = VerificationStore(meta, MemoryStorage(meta), bus)
    assert submit_piece(store, meta, content, 1) is PieceOutcome.VERIFIED_OK
    assert store.state.finished_pieces == 1

    assert submit_piece(store, meta, content, 1) is PieceOutcome.VERIFIED_OK
    assert store.state.finished_pieces == 1


def test_corrupt_piece_resets_and_can_be_retried(meta, content, bus):
    corrupt = []
    bus.subscribe(EventType.PIECE_CORRUPT, corrupt.append)
    store = VerificationStore(meta, MemoryStorage(meta), bus)

    assert submit_piece(store, meta, content, 3, corrupt=True) is PieceOutcome.VERIFIED_FAILED
    assert isinstance(corrupt[0], PieceCorrupt) and corrupt[0].index == 3
    assert store.pieces[3].state is PieceState.EMPTY
    assert store.state.finished_pieces == 0
    assert not store.have(3)

    assert submit_piece(store, meta, content, 3) is PieceOutcome.VERIFIED_OK
    assert store.state.finished_pieces == 1


def test_finished_count_only_grows(meta, content):
    store = VerificationStore(meta, MemoryStorage(meta))
    seen = [store.state.finished_pieces]
    for index, bad in [(0, True), (0, False), (2, False), (2, True), (1, True), (1, False), (3, False)]:
        submit_piece(store, meta, content, index, corrupt=bad)
        seen.append(store.state.finished_pieces)
    assert seen == sorted(seen)
    assert store.state.complete
    assert store.bitfield().is_complete()
    assert store.missing() == []


def test_block_outside_piece_is_rejected(meta):
    store = VerificationStore(meta, MemoryStorage(meta))
    with pytest.raises(ValueError):
        store.submit_block(3, 900, b"x" * 200)
    with pytest.raises(ValueError):
        store.submit_block(4, 0, b"x")


def test_verify_existing_picks_up_file_storage(tmp_path, meta, content):
    store = VerificationStore(meta, FileStorage(meta, tmp_path))
    submit_piece(store, meta, content, 0)
    submit_piece(store, meta, content, 2)

    reloaded = VerificationStore(meta, FileStorage(meta, tmp_path))
    assert reloaded.verify_existing() == 2
    assert list(reloaded.bitfield()) == [0, 2]
    assert reloaded.verified_bytes() == 2 * meta.piece_length


def test_purge_removes_owned_directory(tmp_path, meta, content):
    storage = FileStorage(meta, tmp_path / "dl", owns_directory=True)
    store = VerificationStore(meta, storage)
    submit_piece(store, meta, content, 1)
    assert (tmp_path / "dl" / "sample.bin").exists()

    storage.purge()
    assert not (tmp_path / "dl").exists()
    assert VerificationStore(meta, FileStorage(meta, tmp_path / "dl")).verify_existing() == 0


def test_purge_in_shared_directory_keeps_other_files(tmp_path):
    content = bytes(range(256)) * 200
    raw, _, _ = make_torrent(content, 16384, name="album", files=[("a.bin", 20000), ("sub/b.bin", 31200)])
    meta = parse_metainfo(raw)
    downloads = tmp_path / "Downloads"
    (downloads / "album").mkdir(parents=True)
    (downloads / "notes.txt").write_bytes(b"mine")
    (downloads / "album" / "cover.jpg").write_bytes(b"also mine")

    storage = FileStorage(meta, downloads)
    store = VerificationStore(meta, storage)
    for index in range(meta.num_pieces):
        submit_piece(store, meta, content, index)
    assert (downloads / "album" / "sub" / "b.bin").exists()

    storage.purge()
    assert (downloads / "notes.txt").read_bytes() == b"mine"
    assert (downloads / "album" / "cover.jpg").read_bytes() == b"also mine"
    assert not (downloads / "album" / "a.bin").exists()
    # emptied folders go, folders still holding foreign files stay
    assert not (downloads / "album" / "sub").exists()
    assert (downloads / "album").is_dir()


def test_multi_file_pieces_span_files(tmp_path):
    content = bytes(range(256)) * 200
    raw, _, _ = make_torrent(content, 16384, name="album", files=[("a.bin", 20000), ("sub/b.bin", 31200)])
    meta = parse_metainfo(raw)
    store = VerificationStore(meta, FileStorage(meta, tmp_path))
    for index in range(meta.num_pieces):
        assert submit_piece(store, meta, content, index) is PieceOutcome.VERIFIED_OK

    assert (tmp_path / "album" / "a.bin").read_bytes() == content[:20000]
    assert (tmp_path / "album" / "sub" / "b.bin").read_bytes() == content[20000:]
