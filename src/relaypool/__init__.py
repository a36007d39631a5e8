r"""relaypool -- A pool of Nostr relays presented as one client.

Keeps simultaneous connections to many independent relays, multiplexes
subscriptions across them, deduplicates events received redundantly into a
single stream, and runs NIP-77 negentropy reconciliation to catch up on
missed events without re-downloading full histories.

Architecture follows a **diamond DAG** dependency structure where imports
flow strictly downward:

```text
                core           Pool, connections, registry, streams
             /   |   \
          nips   |   utils     Negentropy, codec, transport, keys
             \   |   /
              models           Pure frozen dataclasses (zero I/O)
```

Attributes:
    models: Relay, Event, Filter, protocol messages and notifications.
    core: RelayPool and its components, exceptions, logging, metrics.
    nips: NIP-77 negentropy algorithm.
    utils: Message codec, WebSocket transport, Nostr key helpers.

Note:
    Top-level imports (``from relaypool import RelayPool``) use lazy loading
    and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("relaypool")

__all__ = [
    "ConnectionStatus",
    "Event",
    "EventStore",
    "Filter",
    "Logger",
    "MemoryEventStore",
    "Negentropy",
    "NegentropyDirection",
    "NegentropyStorage",
    "PoolConfig",
    "Relay",
    "RelayOptions",
    "RelayPool",
    "RelayPoolError",
    "RelayServiceFlag",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "EventStore": ("relaypool.core", "EventStore"),
    "Logger": ("relaypool.core", "Logger"),
    "MemoryEventStore": ("relaypool.core", "MemoryEventStore"),
    "PoolConfig": ("relaypool.core", "PoolConfig"),
    "RelayOptions": ("relaypool.core", "RelayOptions"),
    "RelayPool": ("relaypool.core", "RelayPool"),
    "RelayPoolError": ("relaypool.core", "RelayPoolError"),
    "ConnectionStatus": ("relaypool.models", "ConnectionStatus"),
    "Event": ("relaypool.models", "Event"),
    "Filter": ("relaypool.models", "Filter"),
    "NegentropyDirection": ("relaypool.models", "NegentropyDirection"),
    "Relay": ("relaypool.models", "Relay"),
    "RelayServiceFlag": ("relaypool.models", "RelayServiceFlag"),
    "Negentropy": ("relaypool.nips", "Negentropy"),
    "NegentropyStorage": ("relaypool.nips", "NegentropyStorage"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'relaypool' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
