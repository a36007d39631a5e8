"""
Unit tests for models.relay module.

Tests:
- URL normalization (scheme, case, default ports, slashes)
- Network type detection (clearnet, tor, i2p, loki, local)
- Rejection of invalid URLs
- Identity semantics (equality and hashing on the normalized URL)
"""

import pytest

from relaypool.models import NetworkType, Relay, normalize_relay_url


# =============================================================================
# Normalization Tests
# =============================================================================


class TestRelayNormalization:
    """Relay URL normalization."""

    def test_clearnet_forced_to_wss(self) -> None:
        assert Relay("ws://relay.example.com").url == "wss://relay.example.com"

    def test_host_lowercased(self) -> None:
        assert Relay("wss://Relay.Example.COM").url == "wss://relay.example.com"

    def test_default_port_stripped(self) -> None:
        relay = Relay("wss://relay.example.com:443")
        assert relay.url == "wss://relay.example.com"
        assert relay.port is None

    def test_custom_port_kept(self) -> None:
        relay = Relay("wss://relay.example.com:8443")
        assert relay.url == "wss://relay.example.com:8443"
        assert relay.port == 8443

    def test_trailing_and_duplicate_slashes_stripped(self) -> None:
        assert Relay("wss://relay.example.com//nostr//").url == "wss://relay.example.com/nostr"

    def test_root_path_dropped(self) -> None:
        relay = Relay("wss://relay.example.com/")
        assert relay.url == "wss://relay.example.com"
        assert relay.path is None

    def test_str_is_url(self) -> None:
        assert str(Relay("wss://relay.example.com")) == "wss://relay.example.com"


# =============================================================================
# Network Detection Tests
# =============================================================================


class TestRelayNetwork:
    """Network type detection and per-network scheme rules."""

    def test_clearnet(self) -> None:
        relay = Relay("wss://relay.example.com")
        assert relay.network is NetworkType.CLEARNET
        assert relay.is_overlay is False

    def test_tor_forced_to_ws(self) -> None:
        onion = "a" * 56
        relay = Relay(f"wss://{onion}.onion")
        assert relay.network is NetworkType.TOR
        assert relay.scheme == "ws"
        assert relay.is_overlay is True

    def test_i2p(self) -> None:
        assert Relay("wss://example.i2p").network is NetworkType.I2P

    def test_loki(self) -> None:
        assert Relay("wss://example.loki").network is NetworkType.LOKI

    @pytest.mark.parametrize(
        "url",
        ["ws://localhost:7777", "ws://127.0.0.1:7777", "ws://192.168.1.10:7777"],
    )
    def test_local_keeps_scheme(self, url: str) -> None:
        relay = Relay(url)
        assert relay.network is NetworkType.LOCAL
        assert relay.url == url

    def test_ipv6_clearnet(self) -> None:
        relay = Relay("wss://[2607:f8b0:4000::1]:8080")
        assert relay.network is NetworkType.CLEARNET
        assert relay.host == "2607:f8b0:4000::1"
        assert relay.url == "wss://[2607:f8b0:4000::1]:8080"


# =============================================================================
# Validation Tests
# =============================================================================


class TestRelayValidation:
    """Invalid URLs are rejected at construction."""

    @pytest.mark.parametrize(
        "url",
        [
            "http://relay.example.com",
            "relay.example.com",
            "wss://relay.example.com?x=1",
            "wss://relay.example.com#frag",
            "wss://nodot",
            "wss://-bad-.example.com",
        ],
    )
    def test_invalid_urls(self, url: str) -> None:
        with pytest.raises(ValueError):
            Relay(url)

    def test_null_byte_rejected(self) -> None:
        with pytest.raises(ValueError, match="null"):
            Relay("wss://relay.example.com/\x00")

    def test_non_string_rejected(self) -> None:
        with pytest.raises(TypeError):
            Relay(123)  # type: ignore[arg-type]


# =============================================================================
# Identity Tests
# =============================================================================


class TestRelayIdentity:
    """Equality of the normalized URL defines relay identity."""

    def test_equal_after_normalization(self) -> None:
        assert Relay("ws://Relay.Example.com:443/") == Relay("wss://relay.example.com")

    def test_hash_matches(self) -> None:
        relays = {Relay("wss://relay.example.com"), Relay("wss://RELAY.example.com/")}
        assert len(relays) == 1

    def test_frozen(self) -> None:
        relay = Relay("wss://relay.example.com")
        with pytest.raises(AttributeError):
            relay.url = "wss://other.example.com"  # type: ignore[misc]

    def test_normalize_relay_url(self) -> None:
        assert normalize_relay_url("ws://relay.example.com/") == "wss://relay.example.com"
        assert normalize_relay_url(Relay("wss://relay.example.com")) == "wss://relay.example.com"
