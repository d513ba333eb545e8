"""
Tracker package for communicating with BitTorrent trackers.
"""
from .http_tracker import HTTPTrackerClient
from .tracker_client import TrackerClient
from .udp_tracker import UDPTrackerClient
from .utils import AnnounceResponse

__all__ = ['AnnounceResponse', 'HTTPTrackerClient', 'UDPTrackerClient', 'TrackerClient']
