"""
Unit tests for core.registry module.

Tests:
- Subscription creation and id rules
- Serving / EOSE bookkeeping
- CLOSE acknowledgement vs. relay-initiated CLOSED
- Severance and removal of relays
"""

from unittest.mock import MagicMock

import pytest

from relaypool.core.exceptions import (
    PoolUsageError,
    SubscriptionClosedError,
    UnknownSubscriptionError,
)
from relaypool.core.registry import (
    SUBSCRIPTION_ID_MAX_LENGTH,
    SubscriptionRegistry,
    generate_subscription_id,
)
from relaypool.models import Filter


A = "wss://relay-a.example.com"
B = "wss://relay-b.example.com"
NOTES = Filter(kinds=(1,))


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry()


# =============================================================================
# Creation Tests
# =============================================================================


class TestCreate:
    def test_generated_id(self) -> None:
        sub_id = generate_subscription_id()
        assert len(sub_id) == 32
        int(sub_id, 16)

    def test_create(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        assert sub.filters == (NOTES,)
        assert sub.targets == {A, B}
        assert sub.serving == set()
        assert sub.id in registry
        assert len(registry) == 1

    def test_custom_id(self, registry: SubscriptionRegistry) -> None:
        assert registry.create([NOTES], [A], subscription_id="feed").id == "feed"

    def test_requires_filter(self, registry: SubscriptionRegistry) -> None:
        with pytest.raises(PoolUsageError):
            registry.create([], [A])

    def test_rejects_non_filter(self, registry: SubscriptionRegistry) -> None:
        with pytest.raises(PoolUsageError):
            registry.create([{"kinds": [1]}], [A])  # type: ignore[list-item]

    @pytest.mark.parametrize("bad", ["", "x" * (SUBSCRIPTION_ID_MAX_LENGTH + 1)])
    def test_bad_custom_id(self, registry: SubscriptionRegistry, bad: str) -> None:
        with pytest.raises(PoolUsageError):
            registry.create([NOTES], [A], subscription_id=bad)

    def test_ids_never_reused(self, registry: SubscriptionRegistry) -> None:
        registry.create([NOTES], [A], subscription_id="feed")
        registry.release("feed")
        assert registry.was_issued("feed")
        with pytest.raises(PoolUsageError, match="already used"):
            registry.create([NOTES], [A], subscription_id="feed")

    def test_reserve_id(self, registry: SubscriptionRegistry) -> None:
        reserved = registry.reserve_id()
        assert registry.was_issued(reserved)
        assert reserved not in registry


# =============================================================================
# Serving / EOSE Tests
# =============================================================================


class TestServing:
    def test_mark_served_resets_eose(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        registry.mark_served(sub.id, A)
        registry.record_eose(sub.id, A)
        assert sub.eose_complete()
        registry.mark_served(sub.id, A)
        assert not sub.eose_complete()

    def test_eose_complete_needs_all_serving(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        assert not sub.eose_complete()
        registry.mark_served(sub.id, A)
        registry.mark_served(sub.id, B)
        registry.record_eose(sub.id, A)
        assert not sub.eose_complete()
        registry.record_eose(sub.id, B)
        assert sub.eose_complete()

    def test_eose_from_non_serving_ignored(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        assert registry.record_eose(sub.id, A) is None
        assert registry.record_eose("unknown", A) is None

    def test_targeting(self, registry: SubscriptionRegistry) -> None:
        first = registry.create([NOTES], [A])
        second = registry.create([NOTES], [A, B])
        registry.create([NOTES], [B])
        assert registry.targeting(A) == [first, second]

    def test_update_filters(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        registry.mark_served(sub.id, A)
        registry.record_eose(sub.id, A)
        new = Filter(kinds=(7,))
        registry.update_filters(sub.id, [new])
        assert sub.filters == (new,)
        assert sub.serving == {A}
        assert sub.eose == set()

    def test_update_unknown(self, registry: SubscriptionRegistry) -> None:
        with pytest.raises(UnknownSubscriptionError):
            registry.update_filters("nope", [NOTES])


# =============================================================================
# Close Tests
# =============================================================================


class TestClose:
    def test_close_without_serving_releases(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        _, to_close = registry.close(sub.id)
        assert to_close == set()
        assert sub.id not in registry

    def test_close_waits_for_acknowledgements(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        registry.mark_served(sub.id, A)
        registry.mark_served(sub.id, B)
        _, to_close = registry.close(sub.id)
        assert to_close == {A, B}
        assert sub.closed
        assert registry.active() == []

        _, acknowledged = registry.record_closed(sub.id, A)
        assert acknowledged
        assert sub.id in registry
        registry.record_closed(sub.id, B)
        assert sub.id not in registry

    def test_close_twice(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        registry.mark_served(sub.id, A)
        registry.close(sub.id)
        with pytest.raises(SubscriptionClosedError):
            registry.close(sub.id)

    def test_update_closed(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        registry.mark_served(sub.id, A)
        registry.close(sub.id)
        with pytest.raises(SubscriptionClosedError):
            registry.update_filters(sub.id, [NOTES])

    def test_relay_initiated_closed(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        registry.mark_served(sub.id, A)
        registry.mark_served(sub.id, B)
        found, acknowledged = registry.record_closed(sub.id, A)
        assert found is sub
        assert not acknowledged
        assert sub.serving == {B}
        assert sub.targets == {A, B}

    def test_closed_for_unknown(self, registry: SubscriptionRegistry) -> None:
        assert registry.record_closed("nope", A) == (None, False)

    def test_release_cancels_close_timer(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        handle = MagicMock()
        sub.close_handle = handle
        registry.release(sub.id)
        handle.cancel.assert_called_once()


# =============================================================================
# Relay Loss Tests
# =============================================================================


class TestRelayLoss:
    def test_severed(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        registry.mark_served(sub.id, A)
        registry.mark_served(sub.id, B)
        registry.record_eose(sub.id, A)
        assert registry.relay_severed(A) == [sub]
        assert sub.serving == {B}
        assert sub.eose == set()
        assert sub.targets == {A, B}

    def test_severed_counts_as_close_ack(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A])
        registry.mark_served(sub.id, A)
        registry.close(sub.id)
        registry.relay_severed(A)
        assert sub.id not in registry

    def test_removed_drops_target(self, registry: SubscriptionRegistry) -> None:
        sub = registry.create([NOTES], [A, B])
        registry.mark_served(sub.id, A)
        registry.relay_removed(A)
        assert sub.targets == {B}
        assert sub.serving == set()

    def test_clear(self, registry: SubscriptionRegistry) -> None:
        registry.create([NOTES], [A])
        registry.create([NOTES], [B])
        registry.clear()
        assert len(registry) == 0
