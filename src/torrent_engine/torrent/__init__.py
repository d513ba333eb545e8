"""
Torrent descriptor parsing: .torrent metadata and magnet links.
"""
from .magnet import MagnetLink, is_magnet, parse_magnet
from .metainfo import FileEntry, TorrentMetadata, parse_descriptor, parse_info_dict, parse_metainfo

__all__ = [
    'FileEntry', 'TorrentMetadata', 'MagnetLink',
    'parse_descriptor', 'parse_info_dict', 'parse_metainfo', 'parse_magnet', 'is_magnet',
]
