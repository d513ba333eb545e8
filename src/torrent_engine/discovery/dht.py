"""
Minimal mainline DHT (BEP 5) peer lookup.

This is a lookup client only: an iterative get_peers walk toward the
info-hash starting from bootstrap routers. There is no routing table, no
announce_peer and no token bookkeeping.
"""
import asyncio
import ipaddress
import logging
import os
import socket
from typing import Dict, List, Optional, Tuple

from ..bencode import BencodeDecodeError, BencodeDict, decode, encode, to_python
from ..errors import DHTError
from ..tracker.utils import compact_to_peers

logger = logging.getLogger(__name__)

BOOTSTRAP_NODES = [
    ("router.bittorrent.com", 6881),
    ("dht.transmissionbt.com", 6881),
    ("router.utorrent.com", 6881),
]
NODE_INFO_LEN = 26  # 20-byte id + compact IPv4 address
K = 16


def parse_nodes(blob: bytes) -> List[Tuple[bytes, Tuple[str, int]]]:
    nodes = []
    for i in range(0, len(blob) - len(blob) % NODE_INFO_LEN, NODE_INFO_LEN):
        node_id = blob[i:i + 20]
        for addr in compact_to_peers(blob[i + 20:i + NODE_INFO_LEN]):
            nodes.append((node_id, addr))
    return nodes


def distance(a: bytes, b: bytes) -> int:
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


class KRPCProtocol(asyncio.DatagramProtocol):
    """Matches KRPC responses to queries by transaction id."""

    def __init__(self):
        self.transport = None
        self.waiters: Dict[bytes, asyncio.Future] = {}
        self._next_tid = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        try:
            msg = decode(data)
        except BencodeDecodeError:
            logger.debug("Undecodable KRPC datagram from %s", addr)
            return
        if not isinstance(msg, BencodeDict):
            return
        msg = to_python(msg)
        fut = self.waiters.pop(msg.get(b"t"), None)
        if fut is not None and not fut.done():
            fut.set_result(msg)

    def error_received(self, exc):
        logger.debug("KRPC socket error: %s", exc)

    def connection_lost(self, exc):
        for fut in self.waiters.values():
            if not fut.done():
                fut.set_exception(exc or ConnectionError("KRPC endpoint closed"))
        self.waiters.clear()

    def _tid(self) -> bytes:
        self._next_tid = (self._next_tid + 1) % 65536
        return self._next_tid.to_bytes(2, "big")

    async def query(self, addr, method: str, args: dict, timeout: float) -> Optional[dict]:
        """Send one query; returns the "r" dict, or None on error/timeout."""
        tid = self._tid()
        fut = asyncio.get_running_loop().create_future()
        self.waiters[tid] = fut
        self.transport.sendto(encode({"t": tid, "y": "q", "q": method, "a": args}), addr)
        try:
            msg = await asyncio.wait_for(fut, timeout=timeout)
        except (asyncio.TimeoutError, OSError):
            return None
        finally:
            self.waiters.pop(tid, None)
        if msg.get(b"y") != b"r" or not isinstance(msg.get(b"r"), dict):
            return None
        return msg[b"r"]


class DHTClient:
    def __init__(self, bootstrap=None, node_id: bytes = None, alpha=8, query_timeout=2.0, max_rounds=8):
        self.bootstrap = list(bootstrap) if bootstrap is not None else list(BOOTSTRAP_NODES)
        self.node_id = node_id or os.urandom(20)
        self.alpha = alpha
        self.query_timeout = query_timeout
        self.max_rounds = max_rounds

    async def _resolve_bootstrap(self) -> List[Tuple[str, int]]:
        loop = asyncio.get_running_loop()
        out = []
        for host, port in self.bootstrap:
            try:
                ipaddress.IPv4Address(host)
                out.append((host, port))
                continue
            except ValueError:
                pass
            try:
                infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
            except socket.gaierror as exc:
                logger.debug("Could not resolve DHT bootstrap node %s: %s", host, exc)
                continue
            out.extend(info[4][:2] for info in infos[:1])
        return out

    async def get_peers(self, info_hash: bytes, timeout: float = 10.0) -> List[Tuple[str, int]]:
        """Walk the DHT for up to `timeout` seconds and return the peers found."""
        start = await self._resolve_bootstrap()
        if not start:
            raise DHTError("No DHT bootstrap node could be resolved")

        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(KRPCProtocol, local_addr=("0.0.0.0", 0))
        found: Dict[Tuple[str, int], None] = {}
        try:
            await asyncio.wait_for(self._lookup(protocol, info_hash, start, found), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("DHT lookup hit its %.1fs budget with %d peers", timeout, len(found))
        finally:
            transport.close()
        return list(found)

    async def _lookup(self, protocol, info_hash, start, found):
        # addr -> distance; bootstrap routers have unknown ids so they sort last
        frontier: Dict[Tuple[str, int], int] = {addr: 1 << 160 for addr in start}
        queried = set()
        args = {"id": self.node_id, "info_hash": info_hash}

        for _ in range(self.max_rounds):
            batch = [a for a, _ in sorted(frontier.items(), key=lambda kv: kv[1]) if a not in queried][:self.alpha]
            if not batch:
                break
            queried.update(batch)
            replies = await asyncio.gather(
                *(protocol.query(addr, "get_peers", args, self.query_timeout) for addr in batch)
            )
            for reply in replies:
                if reply is None:
                    continue
                for value in reply.get(b"values", []):
                    if isinstance(value, bytes):
                        for peer in compact_to_peers(value):
                            found[peer] = None
                nodes = reply.get(b"nodes")
                if isinstance(nodes, bytes):
                    for node_id, addr in parse_nodes(nodes):
                        frontier.setdefault(addr, distance(node_id, info_hash))

            closest = sorted(frontier.items(), key=lambda kv: kv[1])[:K * 4]
            frontier = dict(closest)
        return found
