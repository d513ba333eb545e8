import asyncio
import struct

import pytest

from conftest import FakeSeeder
from torrent_engine.config import EngineConfig
from torrent_engine.errors import HandshakeFailed, PeerMisbehaving, RequestTimeout
from torrent_engine.events import EventBus, EventType
from torrent_engine.peer import MetadataExchange
from torrent_engine.peer.message_types import MessageID
from torrent_engine.peer.peer_protocol import build_handshake, build_message
from torrent_engine.pieces import Bitfield, PieceScheduler, VerificationStore
from torrent_engine.storage import MemoryStorage
from torrent_engine.swarm import SwarmController
from torrent_engine.torrent import parse_metainfo

PEER_ID = b"-TE0100-000000000001"


def make_swarm(torrent, config=None, on_verified=None):
    meta = parse_metainfo(torrent[0])
    bus = EventBus()
    store = VerificationStore(meta, MemoryStorage(meta), bus)
    scheduler = PieceScheduler(meta, store.have)
    swarm = SwarmController(meta.info_hash, PEER_ID, config or EngineConfig(), bus, on_verified=on_verified)
    swarm.attach(meta, scheduler, store)
    return meta, bus, store, swarm


def first_event(bus, event_type, predicate=lambda *args: True):
    fut = asyncio.get_running_loop().create_future()

    def handler(*args):
        if not fut.done() and predicate(*args):
            fut.set_result(args)

    bus.subscribe(event_type, handler)
    return fut


async def scripted_peer(info_hash, script):
    """A peer that completes the handshake, writes `script` and then just listens."""

    async def handle(reader, writer):
        try:
            await reader.readexactly(68)
            writer.write(build_handshake(info_hash, b"-XX0001-" + b"9" * 12))
            for frame in script:
                writer.write(frame)
            await writer.drain()
            await reader.read()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_downloads_every_piece_from_a_seeder(torrent, content):
    done = asyncio.Event()
    holder = {}

    def verified(index):
        if holder["store"].state.complete:
            done.set()

    meta, bus, store, swarm = make_swarm(torrent, on_verified=verified)
    holder["store"] = store
    connected = first_event(bus, EventType.PEER_CONNECTED)
    seeder = await FakeSeeder(meta.info_hash, content, meta.piece_length).start()
    try:
        session = swarm.add_candidate("127.0.0.1", seeder.port)
        assert session is not None
        await asyncio.wait_for(done.wait(), 5)
        assert (await connected) == (("127.0.0.1", seeder.port),)
        assert session.remote_peer_id == seeder.peer_id
    finally:
        await swarm.shutdown()
        await seeder.close()

    assert b"".join(store.read_piece(i) for i in range(meta.num_pieces)) == content
    # each block was asked for exactly once
    assert len(seeder.requests) == len(set(seeder.requests))
    assert swarm.downloaded == len(content)


@pytest.mark.asyncio
async def test_wrong_info_hash_is_a_handshake_failure(torrent, content):
    meta, bus, store, swarm = make_swarm(torrent)
    gone = []
    bus.subscribe(EventType.PEER_DISCONNECTED, lambda addr, reason: gone.append(addr))
    warning = first_event(bus, EventType.WARNING)
    seeder = await FakeSeeder(b"\x00" * 20, content, meta.piece_length).start()
    try:
        swarm.add_candidate("127.0.0.1", seeder.port)
        (error,) = await asyncio.wait_for(warning, 5)
    finally:
        await swarm.shutdown()
        await seeder.close()

    assert isinstance(error, HandshakeFailed)
    assert error.address == ("127.0.0.1", seeder.port)
    # never reached Active, so no disconnect notice
    assert gone == []


@pytest.mark.asyncio
async def test_unsolicited_blocks_get_the_peer_dropped(torrent):
    meta, bus, store, swarm = make_swarm(torrent, EngineConfig(misbehavior_threshold=2))
    block = build_message(MessageID.PIECE, struct.pack(">II", 0, 0) + b"x" * 16)
    server, port = await scripted_peer(meta.info_hash, [block] * 3)
    warning = first_event(bus, EventType.WARNING)
    disconnected = first_event(bus, EventType.PEER_DISCONNECTED)
    try:
        swarm.add_candidate("127.0.0.1", port)
        (error,) = await asyncio.wait_for(warning, 5)
        address, reason = await asyncio.wait_for(disconnected, 5)
    finally:
        await swarm.shutdown()
        server.close()
        await server.wait_closed()

    assert isinstance(error, PeerMisbehaving)
    assert error.details["score"] == 3
    assert address == ("127.0.0.1", port)
    assert "Misbehavior" in reason
    assert store.state.finished_pieces == 0


@pytest.mark.asyncio
async def test_unanswered_requests_time_out_and_are_released(torrent):
    meta, bus, store, swarm = make_swarm(torrent, EngineConfig(request_timeout=0.4, pipeline_depth=4))
    bits = Bitfield.full(meta.num_pieces)
    script = [build_message(MessageID.BITFIELD, bits.to_bytes()), build_message(MessageID.UNCHOKE)]
    server, port = await scripted_peer(meta.info_hash, script)
    timed_out = first_event(bus, EventType.WARNING, lambda e: isinstance(e, RequestTimeout))
    try:
        session = swarm.add_candidate("127.0.0.1", port)
        (error,) = await asyncio.wait_for(timed_out, 5)
        assert len(error.details["blocks"]) == 4
        # the session stays up and re-requests the released blocks
        assert session.active
    finally:
        await swarm.shutdown()
        server.close()
        await server.wait_closed()

    assert error.address == ("127.0.0.1", port)


@pytest.mark.asyncio
async def test_impossible_haves_before_metadata_get_the_peer_dropped(torrent):
    info_hash = torrent[1]
    bus = EventBus()
    swarm = SwarmController(info_hash, PEER_ID, EngineConfig(), bus, metadata_exchange=MetadataExchange(info_hash))
    bogus = build_message(MessageID.HAVE, struct.pack(">I", 2 ** 30))
    server, port = await scripted_peer(info_hash, [build_message(MessageID.HAVE, struct.pack(">I", 3))] + [bogus] * 3)
    warning = first_event(bus, EventType.WARNING, lambda e: isinstance(e, PeerMisbehaving))
    try:
        session = swarm.add_candidate("127.0.0.1", port)
        (error,) = await asyncio.wait_for(warning, 5)
    finally:
        await swarm.shutdown()
        server.close()
        await server.wait_closed()

    assert error.details["score"] == 15
    assert session._raw_haves == {3}
