import asyncio
import struct

import pytest

from torrent_engine.errors import TrackerError
from torrent_engine.tracker import UDPTrackerClient


class MockUDPTracker(asyncio.DatagramProtocol):
    """Answers BEP 15 connect and announce requests with one peer."""

    def __init__(self, info_hash_expected, peer_id_expected, fail=False):
        self.info_hash_expected = info_hash_expected
        self.peer_id_expected = peer_id_expected
        self.fail = fail
        self.transport = None
        self.announces = []

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if len(data) < 16:
            return
        _, action, trans_id = struct.unpack(">QII", data[:16])

        if action == 0:  # CONNECT
            connection_id = 0x1122334455667788
            self.transport.sendto(struct.pack(">IIQ", 0, trans_id, connection_id), addr)
            return

        if action == 1:  # ANNOUNCE
            connection_id, _, trans_id = struct.unpack(">QII", data[:16])
            if self.fail:
                self.transport.sendto(struct.pack(">II", 3, trans_id) + b"torrent not registered", addr)
                return
            self.announces.append({
                "connection_id": connection_id,
                "info_hash": data[16:36],
                "peer_id": data[36:56],
                "left": struct.unpack(">Q", data[64:72])[0],
            })
            # one mock peer: 127.0.0.1:6881
            peers = b"\x7F\x00\x00\x01" + (6881).to_bytes(2, "big")
            header = struct.pack(">IIIII", 1, trans_id, 1800, 10, 20)
            self.transport.sendto(header + peers, addr)


async def start_mock_tracker(info_hash, peer_id, fail=False):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: MockUDPTracker(info_hash, peer_id, fail), local_addr=("127.0.0.1", 0),
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, protocol, f"udp://127.0.0.1:{port}/announce"


@pytest.mark.asyncio
async def test_udp_tracker_basic():
    info_hash = b"A" * 20
    peer_id = b"-PC0001-ABCDEFGHIJKL"

    transport, mock, announce_url = await start_mock_tracker(info_hash, peer_id)
    try:
        tracker = UDPTrackerClient(announce_url, info_hash, peer_id)
        resp = await tracker.announce(left=1234)
    finally:
        transport.close()

    assert resp.interval == 1800
    assert resp.peers == [("127.0.0.1", 6881)]
    assert mock.announces[0]["connection_id"] == 0x1122334455667788
    assert mock.announces[0]["info_hash"] == info_hash
    assert mock.announces[0]["peer_id"] == peer_id
    assert mock.announces[0]["left"] == 1234


@pytest.mark.asyncio
async def test_udp_tracker_error_action():
    transport, _, announce_url = await start_mock_tracker(b"A" * 20, b"B" * 20, fail=True)
    try:
        tracker = UDPTrackerClient(announce_url, b"A" * 20, b"B" * 20)
        with pytest.raises(TrackerError, match="not registered"):
            await tracker.announce()
    finally:
        transport.close()


@pytest.mark.asyncio
async def test_udp_tracker_timeout():
    # bound but silent socket
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0))
    port = transport.get_extra_info("sockname")[1]
    try:
        tracker = UDPTrackerClient(f"udp://127.0.0.1:{port}", b"A" * 20, b"B" * 20, timeout=0.2)
        with pytest.raises(TrackerError, match="timed out"):
            await tracker.announce()
    finally:
        transport.close()
