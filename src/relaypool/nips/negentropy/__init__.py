"""NIP-77 negentropy set reconciliation.

Implements [NIP-77](https://github.com/nostr-protocol/nips/blob/master/77.md)
-- the range-based set reconciliation protocol relays speak over
``NEG-OPEN`` / ``NEG-MSG`` / ``NEG-CLOSE``. This package is pure computation:
it turns storage contents and incoming messages into outgoing messages and
id differences. The message exchange itself is driven by
[ReconciliationEngine][relaypool.core.reconciliation.ReconciliationEngine].

Module layout:

```text
codec.py         varints, bounds, fingerprints, protocol constants
storage.py       NegentropyStorage: sorted (timestamp, id) vector
negentropy.py    Negentropy: initiate() / reconcile()
```

See Also:
    [relaypool.core.reconciliation][]: Per-relay session management.
    [relaypool.core.store.EventStore.negentropy_items][]: Source of the
        ``(created_at, id)`` pairs loaded into storage.
"""

from .codec import (
    FINGERPRINT_SIZE,
    ID_SIZE,
    MAX_TIMESTAMP,
    PROTOCOL_VERSION,
    Bound,
    Mode,
    NegentropyError,
    encode_varint,
    fingerprint,
)
from .negentropy import BUCKETS, ID_LIST_THRESHOLD, MIN_FRAME_SIZE_LIMIT, Negentropy
from .storage import NegentropyStorage


__all__ = [
    "BUCKETS",
    "FINGERPRINT_SIZE",
    "ID_LIST_THRESHOLD",
    "ID_SIZE",
    "MAX_TIMESTAMP",
    "MIN_FRAME_SIZE_LIMIT",
    "PROTOCOL_VERSION",
    "Bound",
    "Mode",
    "Negentropy",
    "NegentropyError",
    "NegentropyStorage",
    "encode_varint",
    "fingerprint",
]
