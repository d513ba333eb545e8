import asyncio
import hashlib
import struct

import pytest

from torrent_engine.bencode import encode
from torrent_engine.peer.message_types import MessageID, UtMetadataType
from torrent_engine.peer.peer_protocol import (
    build_ext_handshake, build_extended, build_handshake, build_message, build_metadata_message,
    parse_ext_handshake, parse_metadata_message,
)
from torrent_engine.pieces.bitfield import Bitfield


def make_info(content: bytes, piece_length: int, name="sample.bin", files=None) -> dict:
    """Build an info dictionary whose piece hashes match `content`."""
    hashes = b"".join(
        hashlib.sha1(content[i:i + piece_length]).digest()
        for i in range(0, len(content), piece_length)
    )
    info = {"name": name, "piece length": piece_length, "pieces": hashes}
    if files is None:
        info["length"] = len(content)
    else:
        info["files"] = [{"path": path.split("/"), "length": length} for path, length in files]
    return info


def make_torrent(content: bytes, piece_length: int, name="sample.bin", files=None, announce=None):
    """Returns (.torrent bytes, info-hash, raw info dictionary)."""
    info = make_info(content, piece_length, name, files)
    root = {"info": info}
    if announce:
        root["announce"] = announce
    info_bytes = encode(info)
    return encode(root), hashlib.sha1(info_bytes).digest(), info_bytes


class FakeSeeder:
    """
    A localhost peer that has every piece of `content`. It unchokes at once,
    answers block requests and, when given `info_bytes`, serves ut_metadata.
    Pieces listed in `corrupt` are sent with a flipped byte the first time.
    """

    UT_METADATA_ID = 2

    def __init__(self, info_hash, content, piece_length, info_bytes=None, corrupt=(), have=None):
        self.info_hash = info_hash
        self.content = content
        self.piece_length = piece_length
        self.info_bytes = info_bytes
        self.corrupt = set(corrupt)
        self.num_pieces = -(-len(content) // piece_length)
        self.have = set(range(self.num_pieces)) if have is None else set(have)
        self.peer_id = b"-FS0001-" + b"7" * 12

        self.requests = []
        self.haves = []
        self.server = None
        self.port = None
        self._writers = []

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def start(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def close(self):
        for w in self._writers:
            w.close()
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader, writer):
        self._writers.append(writer)
        remote_ut_metadata = None
        try:
            await reader.readexactly(68)
            writer.write(build_handshake(self.info_hash, self.peer_id))
            size = len(self.info_bytes) if self.info_bytes is not None else None
            ext = build_ext_handshake({"ut_metadata": self.UT_METADATA_ID}, size)
            writer.write(build_message(MessageID.EXTENDED, ext))
            bits = Bitfield.from_indices(self.num_pieces, self.have)
            writer.write(build_message(MessageID.BITFIELD, bits.to_bytes()))
            writer.write(build_message(MessageID.UNCHOKE))
            await writer.drain()

            while True:
                length = struct.unpack(">I", await reader.readexactly(4))[0]
                if length == 0:
                    continue
                body = await reader.readexactly(length)
                msg_id, payload = body[0], body[1:]

                if msg_id == MessageID.REQUEST:
                    index, begin, size = struct.unpack(">III", payload)
                    self.requests.append((index, begin, size))
                    start = index * self.piece_length + begin
                    block = bytearray(self.content[start:start + size])
                    if index in self.corrupt:
                        self.corrupt.discard(index)
                        block[0] ^= 0xFF
                    writer.write(build_message(MessageID.PIECE, struct.pack(">II", index, begin) + bytes(block)))
                elif msg_id == MessageID.HAVE:
                    self.haves.append(struct.unpack(">I", payload)[0])
                elif msg_id == MessageID.EXTENDED:
                    if payload[0] == 0:
                        extensions, _ = parse_ext_handshake(payload[1:])
                        remote_ut_metadata = extensions.get("ut_metadata")
                    elif payload[0] == self.UT_METADATA_ID and remote_ut_metadata:
                        _, piece, _ = parse_metadata_message(payload[1:])
                        chunk = self.info_bytes[piece * 16384:(piece + 1) * 16384]
                        reply = build_metadata_message(UtMetadataType.DATA, piece, chunk, len(self.info_bytes))
                        writer.write(build_message(MessageID.EXTENDED, build_extended(remote_ut_metadata, reply)))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest.fixture
def content():
    # 3 full pieces of 32 KiB and a 1000 byte tail
    return bytes((i * 7 + i // 251) % 256 for i in range(3 * 32768 + 1000))


@pytest.fixture
def torrent(content):
    return make_torrent(content, 32768)
