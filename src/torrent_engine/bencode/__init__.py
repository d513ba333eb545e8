"""
Bencode package for encoding and decoding BitTorrent data.
"""
from .decoder import BencodeDecodeError, decode, decode_prefix, decode_with_spans
from .encoder import BencodeEncodeError, encode
from .structure import BencodeDict, BencodeInt, BencodeList, BencodeString, to_python

__all__ = [
    'decode', 'decode_prefix', 'decode_with_spans', 'encode', 'to_python',
    'BencodeDecodeError', 'BencodeEncodeError',
    'BencodeInt', 'BencodeString', 'BencodeList', 'BencodeDict',
]
