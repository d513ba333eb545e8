"""Magnet URI parsing (BEP 9)."""
import base64
import binascii
import urllib.parse
from dataclasses import dataclass
from typing import Optional, Tuple

from ..config import parse_peer_address
from ..errors import MalformedMetadata

BTIH_PREFIX = "urn:btih:"


@dataclass(frozen=True)
class MagnetLink:
    """What a magnet link tells us before the metadata has been fetched."""
    info_hash: bytes
    display_name: Optional[str] = None
    trackers: Tuple[str, ...] = ()
    peers: Tuple[Tuple[str, int], ...] = ()

    @property
    def announce_list(self) -> Tuple[Tuple[str, ...], ...]:
        return tuple((url,) for url in self.trackers)


def is_magnet(source: str) -> bool:
    return source[:7].lower() == "magnet:"


def _decode_btih(btih: str) -> bytes:
    """btih is either 40 hex chars or 32 base32 chars."""
    btih = btih.strip()
    try:
        if len(btih) == 40:
            return bytes.fromhex(btih)
        if len(btih) == 32:
            return base64.b32decode(btih.upper())
    except (ValueError, binascii.Error) as exc:
        raise MalformedMetadata(f"Invalid btih {btih!r}") from exc
    raise MalformedMetadata(f"btih must be 40 hex or 32 base32 characters, got {len(btih)}")


def parse_magnet(uri: str) -> MagnetLink:
    if not is_magnet(uri):
        raise MalformedMetadata("Not a magnet URI")

    query = uri.split("?", 1)[1] if "?" in uri else ""
    params = urllib.parse.parse_qs(query, keep_blank_values=False)

    info_hash = None
    for xt in params.get("xt", []):
        if xt.lower().startswith(BTIH_PREFIX):
            info_hash = _decode_btih(xt[len(BTIH_PREFIX):])
            break
    if info_hash is None:
        raise MalformedMetadata("Magnet link has no urn:btih exact topic")

    peers = []
    for address in params.get("x.pe", []):
        try:
            peers.append(parse_peer_address(address))
        except ValueError as exc:
            raise MalformedMetadata(f"Invalid x.pe peer address {address!r}") from exc

    trackers = tuple(dict.fromkeys(params.get("tr", [])))
    names = params.get("dn")
    return MagnetLink(
        info_hash=info_hash,
        display_name=names[0] if names else None,
        trackers=trackers,
        peers=tuple(peers),
    )
