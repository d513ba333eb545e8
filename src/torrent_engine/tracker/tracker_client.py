import asyncio
import logging
from typing import Iterable

from ..errors import TrackerError
from .http_tracker import HTTPTrackerClient
from .udp_tracker import UDPTrackerClient
from .utils import AnnounceResponse

logger = logging.getLogger(__name__)


class TrackerClient:
    """Announces to every tracker of a torrent at once and merges the peers."""

    def __init__(self, urls: Iterable[str], info_hash: bytes, peer_id: bytes, port=6881):
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.port = port

        self.trackers = []
        for url in dict.fromkeys(urls):
            self._add_tracker_client(url)

        if not self.trackers:
            raise TrackerError("No usable announce URLs")

    def _add_tracker_client(self, url: str):
        if url.startswith("http"):
            self.trackers.append(HTTPTrackerClient(url, self.info_hash, self.peer_id, self.port))
        elif url.startswith("udp"):
            self.trackers.append(UDPTrackerClient(url, self.info_hash, self.peer_id, self.port))
        else:
            logger.debug("Ignoring tracker with unsupported scheme: %s", url)

    async def _announce_one(self, client, **stats):
        try:
            result = await client.announce(**stats)
            logger.info("%s %s returned %d peers", type(client).__name__, client.url, len(result.peers))
            return result
        except TrackerError as e:
            logger.warning("%s %s failed: %s", type(client).__name__, client.url, e)
            return e

    async def announce(self, uploaded=0, downloaded=0, left=0, event="started") -> AnnounceResponse:
        stats = dict(uploaded=uploaded, downloaded=downloaded, left=left, event=event)
        results = await asyncio.gather(*(self._announce_one(c, **stats) for c in self.trackers))

        answered = [r for r in results if isinstance(r, AnnounceResponse)]
        if not answered:
            raise TrackerError(
                "All trackers failed (HTTP + UDP).",
                {"errors": [str(r) for r in results]},
            )

        all_peers = {}
        for r in answered:
            for peer in r.peers:
                all_peers[peer] = None
        return AnnounceResponse(min(r.interval for r in answered), list(all_peers))
