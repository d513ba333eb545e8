import base64

import pytest

from torrent_engine.errors import MalformedMetadata
from torrent_engine.torrent import is_magnet, parse_magnet

INFO_HASH = bytes(range(20))


def test_parse_hex_magnet():
    uri = (
        "magnet:?xt=urn:btih:" + INFO_HASH.hex()
        + "&dn=Some+Name&tr=udp%3A%2F%2Ftracker.example%3A80&tr=http%3A%2F%2Fother%2Fannounce"
        + "&x.pe=10.0.0.2:51413"
    )
    link = parse_magnet(uri)
    assert link.info_hash == INFO_HASH
    assert link.display_name == "Some Name"
    assert link.trackers == ("udp://tracker.example:80", "http://other/announce")
    assert link.peers == (("10.0.0.2", 51413),)
    assert link.announce_list == (("udp://tracker.example:80",), ("http://other/announce",))


def test_parse_base32_magnet():
    btih = base64.b32encode(INFO_HASH).decode()
    assert parse_magnet("magnet:?xt=urn:btih:" + btih).info_hash == INFO_HASH


def test_is_magnet():
    assert is_magnet("MAGNET:?xt=urn:btih:abc")
    assert not is_magnet("http://example/file.torrent")


@pytest.mark.parametrize("uri", [
    "magnet:?dn=nothing",
    "magnet:?xt=urn:btih:1234",
    "magnet:?xt=urn:btih:" + "zz" * 20,
    "magnet:?xt=urn:btih:" + "ab" * 20 + "&x.pe=no-port",
])
def test_rejects_bad_magnets(uri):
    with pytest.raises(MalformedMetadata):
        parse_magnet(uri)
