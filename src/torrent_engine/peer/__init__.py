from .message_types import BLOCK_LEN, MessageID
from .metadata_exchange import MetadataExchange
from .peer_protocol import *
from .wire_session import SessionState, WireSession

__all__ = [
    "BLOCK_LEN",
    "MessageID",
    "MetadataExchange",
    "SessionState",
    "WireSession",
    "build_handshake",
    "parse_handshake",
    "build_message",
    "parse_message",
]
