"""Shared constants for the models layer.

Defines the enumerations used across model, core and utils modules. Placing
them here avoids circular dependencies between the layers.

See Also:
    [relaypool.models.relay][]: Uses [NetworkType][relaypool.models.constants.NetworkType]
        to classify relay URLs during construction.
    [relaypool.core.connection][]: Drives
        [ConnectionStatus][relaypool.models.constants.ConnectionStatus] transitions.
    [relaypool.core.reconciliation][]: Consumes
        [NegentropyDirection][relaypool.models.constants.NegentropyDirection].
"""

from __future__ import annotations

from enum import IntFlag, StrEnum


class NetworkType(StrEnum):
    """Network type enum for relay classification.

    Each relay URL is classified into exactly one network type during
    [Relay][relaypool.models.relay.Relay] construction. Clearnet relays are
    forced to ``wss://``, overlay networks to ``ws://`` (encryption handled by
    the overlay), and local relays keep the scheme they were given.

    Attributes:
        CLEARNET: Public internet relay using ``wss://``.
        TOR: Tor hidden service identified by a ``.onion`` hostname.
        I2P: I2P eepsite identified by a ``.i2p`` hostname.
        LOKI: Lokinet service identified by a ``.loki`` hostname.
        LOCAL: ``localhost`` or a private/reserved IP address.
        UNKNOWN: Hostname that could not be classified (rejected during validation).
    """

    CLEARNET = "clearnet"
    TOR = "tor"
    I2P = "i2p"
    LOKI = "loki"
    LOCAL = "local"
    UNKNOWN = "unknown"


OVERLAY_NETWORKS: frozenset[NetworkType] = frozenset(
    {NetworkType.TOR, NetworkType.I2P, NetworkType.LOKI}
)


class ConnectionStatus(StrEnum):
    """Lifecycle state of a single relay connection.

    ```text
    INITIALIZED -> CONNECTING -> CONNECTED -> DISCONNECTED -> CONNECTING ...
         \\______________\\______________\\______________\\--> TERMINATED
    ```

    Transitions are driven only by
    [RelayConnection][relaypool.core.connection.RelayConnection].
    ``TERMINATED`` is final.
    """

    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"


class RelayServiceFlag(IntFlag):
    """What a relay is used for inside the pool.

    Attributes:
        READ: Default target for subscriptions, fetches and reconciliation.
        WRITE: Default target for publishes.
        PING: Keep the connection alive with WebSocket heartbeats.
    """

    NONE = 0
    READ = 1
    WRITE = 2
    PING = 4


DEFAULT_RELAY_FLAGS = RelayServiceFlag.READ | RelayServiceFlag.WRITE


class NegentropyDirection(StrEnum):
    """Which side of a reconciliation difference the pool acts on.

    Attributes:
        DOWN: Fetch events the relay has and the local store lacks.
        UP: Publish events the local store has and the relay lacks.
        BOTH: Both of the above.
    """

    DOWN = "down"
    UP = "up"
    BOTH = "both"

    @property
    def do_down(self) -> bool:
        return self in (NegentropyDirection.DOWN, NegentropyDirection.BOTH)

    @property
    def do_up(self) -> bool:
        return self in (NegentropyDirection.UP, NegentropyDirection.BOTH)


EVENT_KIND_MAX = 65_535
