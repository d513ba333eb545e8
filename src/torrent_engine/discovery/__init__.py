"""
Peer discovery: trackers, DHT and manual addresses merged into one feed.
"""
from .dht import DHTClient
from .peer_source import PeerCandidate, PeerSource, PeerSourceKind

__all__ = ['DHTClient', 'PeerCandidate', 'PeerSource', 'PeerSourceKind']
