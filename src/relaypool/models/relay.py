"""
Relay identity: a normalized WebSocket URL plus the network it lives on.

The normalized ``url`` is the key under which a
[RelayPool][relaypool.core.pool.RelayPool] tracks a connection, so two inputs
that normalize to the same string always refer to the same relay. Parsing and
component validation are delegated to ``rfc3986``.

See Also:
    [NetworkType][relaypool.models.constants.NetworkType]: Classification
        used to pick the scheme and whether a SOCKS proxy is needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import ip_address, ip_network
from typing import NamedTuple

from rfc3986 import uri_reference
from rfc3986.exceptions import UnpermittedComponentError, ValidationError
from rfc3986.validators import Validator

from .constants import OVERLAY_NETWORKS, NetworkType


_DEFAULT_PORTS: dict[str, int] = {"ws": 80, "wss": 443}

_OVERLAY_SUFFIXES: tuple[tuple[str, NetworkType], ...] = (
    (".onion", NetworkType.TOR),
    (".i2p", NetworkType.I2P),
    (".loki", NetworkType.LOKI),
)

_LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})

# Private, loopback, link-local and CGNAT ranges.
_LOCAL_NETWORKS = tuple(
    ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

_VALIDATOR = (
    Validator()
    .require_presence_of("scheme", "host")
    .allow_schemes("ws", "wss")
    .check_validity_of("scheme", "host", "port", "path")
)


def detect_network(host: str) -> NetworkType:
    """Classify *host* (IPv6 brackets allowed) into a
    [NetworkType][relaypool.models.constants.NetworkType].

    Returns ``UNKNOWN`` for hosts that cannot be a reachable relay, such as
    single-label names or labels starting or ending with a hyphen.
    """
    bare = host.lower().strip("[]")
    if not bare:
        return NetworkType.UNKNOWN

    for suffix, network in _OVERLAY_SUFFIXES:
        if bare.endswith(suffix):
            return network
    if bare in _LOCAL_HOSTNAMES:
        return NetworkType.LOCAL

    try:
        ip = ip_address(bare)
    except ValueError:
        labels = bare.split(".")
        if len(labels) < 2 or not all(_valid_label(label) for label in labels):
            return NetworkType.UNKNOWN
        return NetworkType.CLEARNET

    if any(ip in net for net in _LOCAL_NETWORKS):
        return NetworkType.LOCAL
    return NetworkType.CLEARNET


def _valid_label(label: str) -> bool:
    return bool(label) and label[0] != "-" and label[-1] != "-"


class _ParsedUrl(NamedTuple):
    scheme: str
    host: str
    port: int | None
    path: str | None
    network: NetworkType

    def render(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        port = f":{self.port}" if self.port is not None else ""
        return f"{self.scheme}://{host}{port}{self.path or ''}"


def _parse(raw: str) -> _ParsedUrl:
    uri = uri_reference(raw.strip()).normalize()
    try:
        _VALIDATOR.validate(uri)
    except UnpermittedComponentError:
        raise ValueError("Invalid scheme: must be ws or wss") from None
    except ValidationError as e:
        raise ValueError(f"Invalid URL: {e}") from None

    if uri.query:
        raise ValueError(f"Relay URL must not contain a query string: ?{uri.query}")
    if uri.fragment:
        raise ValueError(f"Relay URL must not contain a fragment: #{uri.fragment}")

    host = uri.host.strip("[]")
    network = detect_network(host)
    if network is NetworkType.UNKNOWN:
        raise ValueError(f"Invalid host: '{host}'")

    # TLS on the public internet; overlays encrypt on their own; local as given.
    if network is NetworkType.CLEARNET:
        scheme = "wss"
    elif network in OVERLAY_NETWORKS:
        scheme = "ws"
    else:
        scheme = uri.scheme

    port = int(uri.port) if uri.port else None
    if port == _DEFAULT_PORTS[scheme]:
        port = None

    segments = [s for s in (uri.path or "").split("/") if s]
    path = "/" + "/".join(segments) if segments else None

    return _ParsedUrl(scheme, host, port, path, network)


@dataclass(frozen=True, slots=True)
class Relay:
    """A relay URL, normalized at construction.

    Normalization lowercases the host, strips the default port and repeated
    or trailing slashes, and rewrites the scheme per network: ``wss`` for
    clearnet, ``ws`` for Tor / I2P / Lokinet, unchanged for local hosts so
    development relays on ``ws://localhost:7777`` keep working.

    Equality and hashing use the normalized ``url`` only.

    Raises:
        TypeError: If *raw_url* is not a string.
        ValueError: If the URL is malformed, not ``ws``/``wss``, carries a
            query or fragment, contains null bytes, or has an unusable host.

    Examples:
        ```python
        relay = Relay("ws://Relay.Damus.io:443/")
        relay.url       # 'wss://relay.damus.io'
        relay.network   # NetworkType.CLEARNET
        ```
    """

    raw_url: str = field(repr=False, compare=False)

    url: str = field(init=False)
    network: NetworkType = field(init=False, compare=False)
    scheme: str = field(init=False, compare=False)
    host: str = field(init=False, compare=False)
    port: int | None = field(init=False, compare=False)
    path: str | None = field(init=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.raw_url, str):
            raise TypeError(f"raw_url must be a str, got {type(self.raw_url).__name__}")
        if "\x00" in self.raw_url:
            raise ValueError("Relay URL contains null bytes")

        parsed = _parse(self.raw_url)
        object.__setattr__(self, "url", parsed.render())
        for name in ("scheme", "host", "port", "path", "network"):
            object.__setattr__(self, name, getattr(parsed, name))

    def __str__(self) -> str:
        return self.url

    @property
    def is_overlay(self) -> bool:
        """Whether connecting requires a SOCKS proxy (Tor, I2P, Lokinet)."""
        return self.network in OVERLAY_NETWORKS


def normalize_relay_url(url: str | Relay) -> str:
    """Return the normalized identity string for *url*."""
    if isinstance(url, Relay):
        return url.url
    return Relay(url).url
