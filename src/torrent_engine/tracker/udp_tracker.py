"""
UDP Tracker Client (BEP 15) implemented with asyncio DatagramProtocol.
"""
import asyncio
import logging
import random
import socket
import struct
import urllib.parse
from typing import Optional, Tuple

from ..errors import TrackerError
from .utils import AnnounceResponse, compact_to_peers

logger = logging.getLogger(__name__)

PROTOCOL_ID = 0x41727101980
ACTION_CONNECT = 0
ACTION_ANNOUNCE = 1
ACTION_ERROR = 3
EVENTS = {None: 0, "completed": 1, "started": 2, "stopped": 3}


class UDPTrackerProtocol(asyncio.DatagramProtocol):
    """
    Routes each datagram to the request waiting on its transaction id.
    """
    def __init__(self):
        self.transport = None
        self.waiters = {}  # transaction id -> Future

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        if len(data) < 8:
            return
        _, trans_id = struct.unpack(">II", data[:8])
        fut = self.waiters.pop(trans_id, None)
        if fut is not None and not fut.done():
            fut.set_result(data)

    def error_received(self, exc):
        self._fail_all(exc)

    def connection_lost(self, exc):
        self._fail_all(exc or ConnectionError("UDP endpoint closed"))

    def _fail_all(self, exc):
        for fut in self.waiters.values():
            if not fut.done():
                fut.set_exception(exc)
        self.waiters.clear()

    async def send_and_receive(self, data: bytes, trans_id: int, addr: Tuple[str, int], timeout: float) -> bytes:
        if self.transport is None:
            raise RuntimeError("Transport not connected")
        fut = asyncio.get_running_loop().create_future()
        self.waiters[trans_id] = fut
        self.transport.sendto(data, addr)
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        finally:
            self.waiters.pop(trans_id, None)


class UDPTrackerClient:
    """
    Communicates with a UDP tracker to announce download status and retrieve peers.
    """
    def __init__(self, url: str, info_hash: bytes, peer_id: bytes, port=6881, timeout=5.0):
        if not url:
            raise ValueError("No announce URL provided for UDPTrackerClient")
        self.url = url
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.port = port
        self.timeout = timeout

        parsed = urllib.parse.urlparse(self.url)
        self.host = parsed.hostname
        self.tracker_port = parsed.port or 80

    async def _resolve(self) -> Tuple[str, int]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(self.host, self.tracker_port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
        except socket.gaierror as exc:
            raise TrackerError(f"Could not resolve {self.host}: {exc}", {"url": self.url}) from exc
        return infos[0][4][:2]

    async def _request(self, protocol, payload_for, addr) -> bytes:
        trans_id = random.randint(0, 2**31 - 1)
        try:
            resp = await protocol.send_and_receive(payload_for(trans_id), trans_id, addr, self.timeout)
        except asyncio.TimeoutError:
            raise TrackerError("UDP tracker request timed out", {"url": self.url})
        except OSError as exc:
            raise TrackerError(f"UDP tracker request failed: {exc}", {"url": self.url}) from exc

        action = struct.unpack(">I", resp[:4])[0]
        if action == ACTION_ERROR:
            raise TrackerError("Tracker error: " + resp[8:].decode("utf-8", "replace"), {"url": self.url})
        return resp

    async def announce(self, uploaded=0, downloaded=0, left=0, event="started") -> AnnounceResponse:
        addr = await self._resolve()
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(UDPTrackerProtocol, local_addr=("0.0.0.0", 0))
        try:
            return await self._announce(protocol, addr, uploaded, downloaded, left, event)
        finally:
            transport.close()

    async def _announce(self, protocol, addr, uploaded, downloaded, left, event) -> AnnounceResponse:
        resp = await self._request(
            protocol, lambda tid: struct.pack(">QII", PROTOCOL_ID, ACTION_CONNECT, tid), addr,
        )
        if len(resp) < 16:
            raise TrackerError("Invalid UDP tracker connect response", {"url": self.url})
        action_res, _, connection_id = struct.unpack(">IIQ", resp[:16])
        if action_res != ACTION_CONNECT:
            raise TrackerError("UDP tracker connect failed", {"url": self.url})

        def announce_packet(tid):
            return struct.pack(
                ">QII20s20sQQQIIIiH",
                connection_id,
                ACTION_ANNOUNCE,
                tid,
                self.info_hash,
                self.peer_id,
                downloaded,
                left,
                uploaded,
                EVENTS.get(event, 0),
                0,                               # IP address: default
                random.randint(0, 2**31 - 1),    # key
                -1,                              # num_want: default
                self.port,
            )

        resp = await self._request(protocol, announce_packet, addr)
        if len(resp) < 20:
            raise TrackerError("Invalid UDP tracker announce response", {"url": self.url})

        action_res, _, interval, leechers, seeders = struct.unpack(">IIIII", resp[:20])
        if action_res != ACTION_ANNOUNCE:
            raise TrackerError("UDP announce failed", {"url": self.url})

        peers = compact_to_peers(resp[20:])
        logger.debug("UDP tracker %s: %d seeders, %d leechers, %d peers", self.url, seeders, leechers, len(peers))
        return AnnounceResponse(interval or 1800, peers)
