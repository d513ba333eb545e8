"""
Engine configuration.

The recognised caller-facing options use camelCase aliases
(maxConnections, downloadDirectory, verifyExisting, dhtBootstrapTimeout,
useTrackers, ephemeral, waitForSelection, manualPeers); the remaining fields
are tuning knobs with snake_case names only.
"""
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError


def parse_peer_address(address: str) -> Tuple[str, int]:
    """Split "host:port" (or "[v6]:port") into (host, port)."""
    if not isinstance(address, str) or ":" not in address:
        raise ValueError(f"Peer address must look like host:port, got {address!r}")

    if address.startswith("["):
        host, sep, port = address[1:].partition("]:")
        if not sep:
            raise ValueError(f"Malformed IPv6 peer address {address!r}")
    else:
        host, _, port = address.rpartition(":")

    if not host or not port.isdigit():
        raise ValueError(f"Malformed peer address {address!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"Port out of range in {address!r}")
    return host, port_num


class EngineConfig(BaseModel):
    """Options for one Engine instance."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    max_connections: int = Field(default=100, ge=1, le=10000, alias="maxConnections")
    download_directory: Optional[Path] = Field(default=None, alias="downloadDirectory")
    verify_existing: bool = Field(default=True, alias="verifyExisting")
    # None disables the DHT source entirely
    dht_bootstrap_timeout_ms: Optional[int] = Field(default=10000, ge=0, alias="dhtBootstrapTimeout")
    use_trackers: bool = Field(default=True, alias="useTrackers")
    ephemeral: bool = Field(default=False, alias="ephemeral")
    wait_for_selection: bool = Field(default=False, alias="waitForSelection")
    manual_peers: Tuple[str, ...] = Field(default=(), alias="manualPeers")

    # ---- tuning ----
    port: int = Field(default=6881, ge=1, le=65535)
    pipeline_depth: int = Field(default=16, ge=1, le=256)
    request_timeout: float = Field(default=30.0, gt=0)
    endgame_grace: float = Field(default=10.0, ge=0)
    misbehavior_threshold: int = Field(default=10, ge=1)
    connect_timeout: float = Field(default=5.0, gt=0)
    handshake_timeout: float = Field(default=5.0, gt=0)
    keepalive_interval: float = Field(default=90.0, gt=0)
    dedup_window: float = Field(default=300.0, ge=0)
    min_announce_interval: float = Field(default=60.0, ge=0)
    dht_lookup_interval: float = Field(default=300.0, gt=0)
    speed_window: float = Field(default=5.0, gt=0)

    @field_validator("manual_peers", mode="before")
    @classmethod
    def _coerce_peers(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    @field_validator("manual_peers")
    @classmethod
    def _check_peers(cls, value):
        for address in value:
            parse_peer_address(address)
        return value

    @property
    def dht_enabled(self) -> bool:
        return self.dht_bootstrap_timeout_ms is not None

    @property
    def dht_bootstrap_timeout(self) -> Optional[float]:
        """Bootstrap timeout in seconds, or None when the DHT is disabled."""
        if self.dht_bootstrap_timeout_ms is None:
            return None
        return self.dht_bootstrap_timeout_ms / 1000.0

    @property
    def manual_addresses(self):
        return [parse_peer_address(a) for a in self.manual_peers]

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]] = None) -> "EngineConfig":
        """Build a config from a caller-supplied options record."""
        try:
            return cls.model_validate(dict(options or {}))
        except ValidationError as exc:
            raise ConfigurationError("Invalid engine options", {"errors": exc.errors()}) from exc
