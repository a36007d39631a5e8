"""NIP protocol implementations used by the pool.

Sits beside ``relaypool.core`` and ``relaypool.utils`` in the diamond DAG and
depends only on ``relaypool.models`` (or nothing at all).

Attributes:
    negentropy: NIP-77 negentropy set reconciliation algorithm.
"""

from relaypool.nips.negentropy import Negentropy, NegentropyError, NegentropyStorage


__all__ = [
    "Negentropy",
    "NegentropyError",
    "NegentropyStorage",
]
