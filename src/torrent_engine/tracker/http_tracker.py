import asyncio
import logging
import urllib.parse
from typing import List, Tuple

import aiohttp

from ..bencode import BencodeDecodeError, decode
from ..bencode.structure import BencodeDict, BencodeInt, BencodeList, BencodeString
from ..errors import TrackerError
from .utils import AnnounceResponse, compact_to_peers, compact_to_peers6

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1800


def _parse_peer_list(peers_field) -> List[Tuple[str, int]]:
    if isinstance(peers_field, BencodeString):
        return compact_to_peers(peers_field.value)

    if isinstance(peers_field, BencodeList):
        # Non-compact peer list (list of dictionaries)
        peers = []
        for peer_dict in peers_field.value:
            if not isinstance(peer_dict, BencodeDict):
                continue
            ip_b = peer_dict.get(b"ip")
            port_b = peer_dict.get(b"port")
            if isinstance(ip_b, BencodeString) and isinstance(port_b, BencodeInt):
                peers.append((ip_b.text("replace"), port_b.value))
        return peers

    raise TrackerError("Tracker returned invalid peer list")


def parse_announce_response(data: bytes) -> AnnounceResponse:
    try:
        root = decode(data)
    except BencodeDecodeError as exc:
        raise TrackerError(f"Tracker response is not bencoded: {exc}") from exc
    if not isinstance(root, BencodeDict):
        raise TrackerError("Tracker response must be a dictionary")

    failure = root.get(b"failure reason")
    if isinstance(failure, BencodeString):
        raise TrackerError("Tracker error: " + failure.text("replace"))

    peers = _parse_peer_list(root.get(b"peers", BencodeString(b"")))
    peers6 = root.get(b"peers6")
    if isinstance(peers6, BencodeString):
        peers.extend(compact_to_peers6(peers6.value))

    interval = root.get(b"interval")
    interval = interval.value if isinstance(interval, BencodeInt) and interval.value > 0 else DEFAULT_INTERVAL
    return AnnounceResponse(interval, peers)


class HTTPTrackerClient:
    def __init__(self, url: str, info_hash: bytes, peer_id: bytes, port=6881, timeout=15.0):
        if not url:
            raise ValueError("No announce URL provided for HTTPTrackerClient")
        self.url = url
        self.info_hash = info_hash
        self.peer_id = peer_id  # MUST be 20 bytes
        self.port = port
        self.timeout = timeout

    def build_url(self, uploaded=0, downloaded=0, left=0, event=None) -> str:
        params = {
            "info_hash": self.info_hash,
            "peer_id": self.peer_id,
            "port": self.port,
            "uploaded": uploaded,
            "downloaded": downloaded,
            "left": left,
            "compact": 1,
        }
        if event:
            params["event"] = event
        # binary fields need %HH per byte, which quote_from_bytes gives us
        query = "&".join(
            f"{k}={urllib.parse.quote_from_bytes(v, safe='') if isinstance(v, bytes) else v}"
            for k, v in params.items()
        )
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{query}"

    async def announce(self, uploaded=0, downloaded=0, left=0, event="started") -> AnnounceResponse:
        full_url = self.build_url(uploaded, downloaded, left, event)
        logger.debug("Announcing to %s", self.url)

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.get(full_url) as resp:
                    if resp.status != 200:
                        raise TrackerError(f"Tracker returned HTTP {resp.status}", {"url": self.url})
                    data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TrackerError(f"Tracker request failed: {exc}", {"url": self.url}) from exc

        return parse_announce_response(data)
