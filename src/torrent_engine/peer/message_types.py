"""
Defines constants for BitTorrent Peer Protocol message IDs and block sizes.
"""
from enum import IntEnum


class MessageID(IntEnum):
    """IDs for standard BitTorrent peer protocol messages."""
    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    EXTENDED = 20  # BEP 10


class UtMetadataType(IntEnum):
    """msg_type values of the ut_metadata extension (BEP 9)."""
    REQUEST = 0
    DATA = 1
    REJECT = 2


KEEPALIVE = "keepalive"

# Standard block size for piece requests
BLOCK_LEN = 16 * 1024   # 16 KB
# Largest block we will ask for or accept
MAX_BLOCK_LEN = 128 * 1024
# Upper bound on a single frame: a block plus generous header slack
MAX_MESSAGE_LEN = MAX_BLOCK_LEN + 1024 * 1024

# ut_metadata transfers the info dictionary in 16 KiB pieces
METADATA_PIECE_LEN = 16 * 1024
# Our local id for ut_metadata in the extended handshake "m" dictionary
UT_METADATA_LOCAL_ID = 3
