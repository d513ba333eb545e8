import asyncio
import logging
import struct
import time
from collections import OrderedDict
from enum import Enum
from typing import Dict, Optional, Tuple

from ..errors import HandshakeFailed, PeerError, PeerMisbehaving, PeerUnreachable, ProtocolError, RequestTimeout
from ..pieces.bitfield import Bitfield
from .message_types import (
    KEEPALIVE, MAX_MESSAGE_LEN, METADATA_PIECE_LEN, UT_METADATA_LOCAL_ID, MessageID, UtMetadataType,
)
from .metadata_exchange import MAX_METADATA_SIZE
from .peer_protocol import (
    HANDSHAKE_LEN, build_ext_handshake, build_extended, build_handshake, build_have, build_keepalive,
    build_message, build_metadata_message, build_request, parse_ext_handshake, parse_extended,
    parse_handshake, parse_have, parse_metadata_message, parse_piece, parse_request,
)

logger = logging.getLogger(__name__)

BlockKey = Tuple[int, int]

# misbehavior points
UNSOLICITED_BLOCK = 1
MALFORMED_MESSAGE = 5


class SessionState(Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class WireSession:
    """
    One peer connection: Connecting -> Handshaking -> Active -> Closing -> Closed.

    Incoming messages are handled synchronously; writes are buffered and a
    separate pump task drains them and tops up the request pipeline whenever
    wake() is called. A timer task expires stale requests and sends
    keep-alives.
    """

    def __init__(self, swarm, host: str, port: int, source=None):
        self.swarm = swarm
        self.config = swarm.config
        self.address: Tuple[str, int] = (host, port)
        self.source = source
        self.state = SessionState.CONNECTING

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.remote_peer_id: Optional[bytes] = None
        self.supports_extended = False
        self.extensions: Dict[str, int] = {}

        # Availability; raw forms are kept until metadata is known
        self.bitfield: Optional[Bitfield] = None
        self._raw_bitfield: Optional[bytes] = None
        self._raw_haves = set()
        self._availability_seen = False

        # Outstanding block requests: (index, begin) -> (request, sent_at)
        self.outstanding: Dict[BlockKey, tuple] = {}
        # Requests we gave up on (timeout, cancel, choke); late blocks for them are not penalised
        self._expired: "OrderedDict[BlockKey, None]" = OrderedDict()

        # Choking state from our perspective and peer's perspective
        self.am_choking = True
        self.am_interested = False
        self.peer_choking = True
        self.peer_interested = False

        self.misbehavior = 0
        self.downloaded = 0
        self.last_sent = time.monotonic()
        self.last_received = time.monotonic()
        self._metadata_requested_at: Optional[float] = None

        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._helpers = []
        self.close_reason: Optional[str] = None

    def __repr__(self):
        return f"WireSession({self.address[0]}:{self.address[1]}, {self.state.value})"

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, reader=None, writer=None):
        """
        Drive the session until it closes. Peer-level failures end the session
        and are reported to the swarm; anything else (storage failure,
        cancellation) propagates after teardown.
        """
        self._task = asyncio.current_task()
        error: Optional[PeerError] = None
        try:
            await self._connect(reader, writer)
            await self._handshake()
            self.state = SessionState.ACTIVE
            self.swarm.session_active(self)
            self._on_active()

            reader_task = asyncio.create_task(self._message_loop())
            self._helpers = [
                reader_task,
                asyncio.create_task(self._pump_loop()),
                asyncio.create_task(self._timer_loop()),
            ]
            done, _ = await asyncio.wait(self._helpers, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
        except PeerError as exc:
            if exc.address is None:
                exc.address = self.address
            error = exc
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            self.close_reason = self.close_reason or f"connection lost: {exc!r}"
        finally:
            await self._teardown(error)

    def close(self, reason: str):
        """Ask the session to shut down; teardown happens in run()."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.close_reason = self.close_reason or reason
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _teardown(self, error: Optional[PeerError]):
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSING

        current = asyncio.current_task()
        helpers = [t for t in self._helpers if t is not current]
        for t in helpers:
            t.cancel()
        for t in helpers:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("%r helper ended with %r during teardown", self, exc)

        if error is not None and self.close_reason is None:
            self.close_reason = str(error)

        # reservations go back to the scheduler before the session is dropped
        self.swarm.session_closed(self, error)
        self.outstanding.clear()

        if self.writer is not None:
            self.writer.close()
        self.state = SessionState.CLOSED
        logger.debug("%r closed: %s", self, self.close_reason)

    # ------------------------------------------------------------------
    # Connect + handshake
    # ------------------------------------------------------------------

    async def _connect(self, reader, writer):
        if reader is not None and writer is not None:
            self.reader, self.writer = reader, writer
            return
        host, port = self.address
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise PeerUnreachable(f"Could not connect to peer {host}:{port} -> connection timed out", self.address)
        except OSError as e:
            raise PeerUnreachable(f"Could not connect to peer {host}:{port} -> {e}", self.address)

    async def _handshake(self):
        self.state = SessionState.HANDSHAKING
        self._write(build_handshake(self.swarm.info_hash, self.swarm.peer_id))
        try:
            await self.writer.drain()
            resp = await asyncio.wait_for(
                self.reader.readexactly(HANDSHAKE_LEN),
                timeout=self.config.handshake_timeout,
            )
        except asyncio.TimeoutError:
            raise HandshakeFailed("Timed out waiting for handshake from peer", self.address)
        except (asyncio.IncompleteReadError, ConnectionError) as exc:
            raise HandshakeFailed(f"Peer closed connection during handshake: {exc!r}", self.address)

        handshake = parse_handshake(resp)
        if handshake.info_hash != self.swarm.info_hash:
            raise HandshakeFailed("Peer sent a handshake with wrong info_hash", self.address)
        if handshake.peer_id == self.swarm.peer_id:
            raise HandshakeFailed("Connected to ourselves", self.address)

        self.remote_peer_id = handshake.peer_id
        self.supports_extended = handshake.supports_extended
        self.last_received = time.monotonic()

    def _on_active(self):
        meta = self.swarm.metadata
        if self.supports_extended:
            size = len(meta.info_bytes) if meta is not None and meta.info_bytes else None
            self._send(MessageID.EXTENDED, build_ext_handshake({"ut_metadata": UT_METADATA_LOCAL_ID}, size))
        if self.swarm.store is not None:
            have = self.swarm.store.bitfield()
            if have.count():
                self._send(MessageID.BITFIELD, have.to_bytes())
        self.wake()

    def on_metadata(self, metadata):
        """Metadata just became available: resolve availability we had to buffer."""
        if self.state is not SessionState.ACTIVE:
            return
        try:
            if self._raw_bitfield is not None:
                self.bitfield = Bitfield(metadata.num_pieces, self._raw_bitfield)
            else:
                self.bitfield = Bitfield(metadata.num_pieces)
            for idx in self._raw_haves:
                self.bitfield.set(idx)
        except (ProtocolError, IndexError) as exc:
            self.close(f"invalid availability after metadata: {exc}")
            return
        self._raw_bitfield = None
        self._raw_haves.clear()
        self.swarm.scheduler.peer_bitfield(self, self.bitfield)
        self.wake()

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    def _write(self, data: bytes):
        self.writer.write(data)
        self.last_sent = time.monotonic()

    def _send(self, msg_id: MessageID, payload: bytes = b""):
        if self.state not in (SessionState.HANDSHAKING, SessionState.ACTIVE):
            return
        self._write(build_message(msg_id, payload))

        if msg_id == MessageID.CHOKE:
            self.am_choking = True
        elif msg_id == MessageID.UNCHOKE:
            self.am_choking = False
        elif msg_id == MessageID.INTERESTED:
            self.am_interested = True
        elif msg_id == MessageID.NOT_INTERESTED:
            self.am_interested = False

    def wake(self):
        self._wakeup.set()

    def send_have(self, index: int):
        self._send(MessageID.HAVE, build_have(index))
        self.wake()

    def cancel_block(self, request):
        """Withdraw a request another peer has already satisfied (endgame)."""
        if self.outstanding.pop(request.key, None) is None:
            return
        self._expire(request.key)
        self._send(MessageID.CANCEL, build_request(*request))
        self.wake()

    def _expire(self, key: BlockKey):
        self._expired[key] = None
        while len(self._expired) > 4 * self.config.pipeline_depth:
            self._expired.popitem(last=False)

    async def _pump_loop(self):
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            self._pump()
            await self.writer.drain()

    def _pump(self):
        """Update interest and top up the request pipeline."""
        if self.state is not SessionState.ACTIVE:
            return
        if self.swarm.metadata is None:
            self._pump_metadata()
            return
        if self.bitfield is None:
            return

        interesting = self.swarm.scheduler.is_interesting(self)
        if interesting and not self.am_interested:
            self._send(MessageID.INTERESTED)
        elif not interesting and self.am_interested:
            self._send(MessageID.NOT_INTERESTED)

        if self.peer_choking or not self.am_interested:
            return
        capacity = self.config.pipeline_depth - len(self.outstanding)
        if capacity <= 0:
            return
        now = time.monotonic()
        for req in self.swarm.request_blocks(self, capacity):
            self.outstanding[req.key] = (req, now)
            self._expired.pop(req.key, None)
            self._send(MessageID.REQUEST, build_request(*req))
        logger.debug("%r has %d requests in flight", self, len(self.outstanding))

    def _pump_metadata(self):
        exchange = self.swarm.metadata_exchange
        remote_id = self.extensions.get("ut_metadata")
        if exchange is None or remote_id is None or exchange.size is None:
            return
        now = time.monotonic()
        if self._metadata_requested_at is not None and now - self._metadata_requested_at < self.config.request_timeout:
            return
        piece = exchange.next_piece()
        if piece is None:
            return
        self._metadata_requested_at = now
        body = build_metadata_message(UtMetadataType.REQUEST, piece)
        self._send(MessageID.EXTENDED, build_extended(remote_id, body))

    async def _timer_loop(self):
        tick = min(1.0, self.config.request_timeout / 4)
        while True:
            await asyncio.sleep(tick)
            self._expire_requests()
            if time.monotonic() - self.last_sent >= self.config.keepalive_interval:
                self._write(build_keepalive())
                self.wake()

    def _expire_requests(self):
        now = time.monotonic()
        stale = [key for key, (_, sent) in self.outstanding.items()
                 if now - sent >= self.config.request_timeout]
        if not stale:
            return
        for key in stale:
            self.outstanding.pop(key, None)
            self._expire(key)
        self.swarm.scheduler.release(self, stale)
        self.swarm.report(RequestTimeout(
            f"{len(stale)} request(s) to {self.address[0]}:{self.address[1]} timed out",
            self.address, {"blocks": stale},
        ))
        self.wake()

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def _read_message(self):
        """Reads one framed message; (None, None) when the peer hung up."""
        try:
            header = await self.reader.readexactly(4)
            length = struct.unpack(">I", header)[0]
            if length == 0:
                self.last_received = time.monotonic()
                return KEEPALIVE, b""
            if length > MAX_MESSAGE_LEN:
                raise PeerMisbehaving(f"Frame of {length} bytes exceeds limit", self.address)
            body = await self.reader.readexactly(length)
        except asyncio.IncompleteReadError:
            return None, None
        self.last_received = time.monotonic()
        return body[0], body[1:]

    async def _message_loop(self):
        while True:
            msg_id, payload = await self._read_message()
            if msg_id is None:
                self.close_reason = self.close_reason or "peer closed connection"
                return
            try:
                self._handle(msg_id, payload)
            except ProtocolError as exc:
                logger.debug("%r sent a malformed message: %s", self, exc)
                self._misbehave(MALFORMED_MESSAGE, str(exc))
            self.wake()

    def _misbehave(self, points: int, reason: str):
        self.misbehavior += points
        if self.misbehavior > self.config.misbehavior_threshold:
            raise PeerMisbehaving(
                f"Misbehavior score {self.misbehavior} exceeded threshold ({reason})",
                self.address, {"score": self.misbehavior},
            )

    def _handle(self, msg_id, payload: bytes):
        if msg_id == KEEPALIVE:
            return

        if msg_id == MessageID.CHOKE:
            self.peer_choking = True
            # a choking peer discards our queue; hand the blocks to someone else
            keys = list(self.outstanding)
            for key in keys:
                self._expire(key)
            self.outstanding.clear()
            if keys and self.swarm.scheduler is not None:
                self.swarm.scheduler.release(self, keys)
        elif msg_id == MessageID.UNCHOKE:
            self.peer_choking = False
        elif msg_id == MessageID.INTERESTED:
            self.peer_interested = True
        elif msg_id == MessageID.NOT_INTERESTED:
            self.peer_interested = False
        elif msg_id == MessageID.HAVE:
            self._handle_have(parse_have(payload))
        elif msg_id == MessageID.BITFIELD:
            self._handle_bitfield(payload)
        elif msg_id == MessageID.REQUEST:
            parse_request(payload)
            # we never unchoke anyone, so requests are dropped
            logger.debug("%r requested a block while choked, ignoring", self)
        elif msg_id == MessageID.PIECE:
            self._handle_piece(*parse_piece(payload))
        elif msg_id == MessageID.CANCEL:
            parse_request(payload)
        elif msg_id == MessageID.EXTENDED:
            self._handle_extended(*parse_extended(payload))
        else:
            logger.debug("%r sent unknown message id %r", self, msg_id)

    def _handle_have(self, index: int):
        self._availability_seen = True
        meta = self.swarm.metadata
        if meta is None:
            if not 0 <= index < self._max_pieces_before_metadata():
                raise ProtocolError(f"have for piece {index} cannot exist in any torrent of this size")
            self._raw_haves.add(index)
            return
        if not 0 <= index < meta.num_pieces:
            raise ProtocolError(f"have for piece {index} out of range")
        if self.bitfield is None:
            self.bitfield = Bitfield(meta.num_pieces)
        self.bitfield.set(index)
        self.swarm.scheduler.peer_have(self, index)

    def _max_pieces_before_metadata(self) -> int:
        # every piece needs a 20 byte hash inside the info dictionary
        exchange = self.swarm.metadata_exchange
        size = exchange.size if exchange is not None and exchange.size else MAX_METADATA_SIZE
        return size // 20

    def _handle_bitfield(self, payload: bytes):
        # only the extended handshake may precede it
        if self._availability_seen:
            raise ProtocolError("bitfield sent after availability was already announced")
        self._availability_seen = True
        meta = self.swarm.metadata
        if meta is None:
            self._raw_bitfield = bytes(payload)
            return
        self.bitfield = Bitfield(meta.num_pieces, payload)
        self.swarm.scheduler.peer_bitfield(self, self.bitfield)

    def _handle_piece(self, index: int, begin: int, block: bytes):
        key = (index, begin)
        entry = self.outstanding.pop(key, None)
        if entry is None:
            if key in self._expired:
                logger.debug("%r delivered late block %d/%d, discarding", self, index, begin)
                return
            logger.debug("%r sent unsolicited block %d/%d", self, index, begin)
            self._misbehave(UNSOLICITED_BLOCK, "unsolicited block")
            return

        request, _ = entry
        if len(block) != request.length:
            self.swarm.scheduler.release(self, [key])
            raise ProtocolError(f"block {index}/{begin} has {len(block)} bytes, asked for {request.length}")

        self.downloaded += len(block)
        self.swarm.on_block(self, request, block)

    def _handle_extended(self, ext_id: int, body: bytes):
        if ext_id == 0:
            self.extensions, metadata_size = parse_ext_handshake(body)
            exchange = self.swarm.metadata_exchange
            if exchange is not None and metadata_size is not None:
                exchange.offer_size(metadata_size)
            return

        if ext_id != UT_METADATA_LOCAL_ID:
            logger.debug("%r sent unsupported extension message %d", self, ext_id)
            return

        msg_type, piece, data = parse_metadata_message(body)
        if msg_type == UtMetadataType.REQUEST:
            self._serve_metadata(piece)
            return

        exchange = self.swarm.metadata_exchange
        self._metadata_requested_at = None
        if exchange is None:
            return
        if msg_type == UtMetadataType.DATA:
            self.swarm.on_metadata_piece(self, piece, data)
        elif msg_type == UtMetadataType.REJECT:
            exchange.rejected(piece)

    def _serve_metadata(self, piece: int):
        remote_id = self.extensions.get("ut_metadata")
        if remote_id is None:
            return
        meta = self.swarm.metadata
        info = meta.info_bytes if meta is not None else b""
        start = piece * METADATA_PIECE_LEN
        if not info or not 0 <= start < len(info):
            body = build_metadata_message(UtMetadataType.REJECT, piece)
        else:
            chunk = info[start:start + METADATA_PIECE_LEN]
            body = build_metadata_message(UtMetadataType.DATA, piece, chunk, total_size=len(info))
        self._send(MessageID.EXTENDED, build_extended(remote_id, body))
