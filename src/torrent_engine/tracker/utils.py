"""
Utility functions for tracker and DHT communication.
"""
import socket
from typing import List, NamedTuple, Tuple


class AnnounceResponse(NamedTuple):
    interval: int
    peers: List[Tuple[str, int]]


def compact_to_peers(blob: bytes) -> List[Tuple[str, int]]:
    """
    Decodes a compact peer list (6 bytes per peer: 4 for IP, 2 for port)
    into a list of (IP, port) tuples. A ragged tail is ignored.
    """
    peers = []
    for i in range(0, len(blob) - len(blob) % 6, 6):
        ip = socket.inet_ntoa(blob[i:i+4])
        port = int.from_bytes(blob[i+4:i+6], "big")
        if port:
            peers.append((ip, port))
    return peers


def compact_to_peers6(blob: bytes) -> List[Tuple[str, int]]:
    """Same as compact_to_peers for the 18-byte IPv6 form (peers6)."""
    peers = []
    for i in range(0, len(blob) - len(blob) % 18, 18):
        ip = socket.inet_ntop(socket.AF_INET6, blob[i:i+16])
        port = int.from_bytes(blob[i+16:i+18], "big")
        if port:
            peers.append((ip, port))
    return peers


def peers_to_compact(peers) -> bytes:
    return b"".join(socket.inet_aton(ip) + port.to_bytes(2, "big") for ip, port in peers)
