"""Nostr key management, message codec, and WebSocket transport.

The utils layer sits in the middle of the diamond DAG, depending only on
[relaypool.models][relaypool.models]. It provides the low-level network,
serialization and cryptographic pieces the core layer plugs together.

Attributes:
    keys: Key loading from environment variables, the default event signer
        and the default event verifier (``nostr_sdk``).
    protocol: NIP-01 / NIP-77 JSON codec for both message directions.
    transport: ``Transport`` protocol and the default aiohttp
        ``WebSocketTransport``. Overlay networks (Tor/I2P/Lokinet) require
        ``proxy_url``.

Note:
    The utils layer has **zero** imports from ``relaypool.core``. Failures
    surface as standard library exceptions (``OSError``, ``TimeoutError``,
    ``ValueError``) that the core layer maps onto its own hierarchy.

Examples:
    ```python
    from relaypool.utils.keys import KeysConfig, sign_event
    from relaypool.utils.protocol import decode_relay_message
    ```
"""
