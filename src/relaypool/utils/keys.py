"""Nostr keys: loading from the environment, signing and verification.

[verify_event()][relaypool.utils.keys.verify_event] is the default verifier
of [RelayPool][relaypool.core.pool.RelayPool];
[sign_event()][relaypool.utils.keys.sign_event] builds events to publish.
Both delegate the secp256k1 Schnorr work to ``nostr_sdk``.

Warning:
    Private keys belong in the environment or a secret manager, never in
    configuration files or logs.

Examples:
    ```python
    keys = load_keys_from_env("PRIVATE_KEY")  # nsec1... or 64 hex chars
    event = sign_event(keys, kind=1, content="hello")
    verify_event(event)  # True
    ```
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from typing import Any

from nostr_sdk import EventBuilder, Keys, Kind, Tag, Timestamp
from pydantic import BaseModel, ConfigDict, Field, model_validator

from relaypool.models.event import Event


ENV_PRIVATE_KEY = "PRIVATE_KEY"  # pragma: allowlist secret


logger = logging.getLogger("relaypool.utils.keys")


def load_keys_from_env(env_var: str = ENV_PRIVATE_KEY) -> Keys:
    """Parse the private key (``nsec1`` bech32 or hex) held in *env_var*.

    Raises:
        ValueError: If the variable is unset or empty.
        nostr_sdk.NostrError: If the value is not a valid secret key.
    """
    secret = os.environ.get(env_var, "")
    if not secret:
        raise ValueError(f"{env_var} is required to sign events (nsec1... or 64 hex chars)")
    return Keys.parse(secret)


class KeysConfig(BaseModel):
    """Signing keys resolved from an environment variable at validation time.

    ``keys`` holds a live private key: never dump this model.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    keys_env: str = Field(default=ENV_PRIVATE_KEY, min_length=1, description="Private key variable")
    keys: Keys

    @model_validator(mode="before")
    @classmethod
    def _resolve_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "keys" not in data:
            data = {**data, "keys": load_keys_from_env(data.get("keys_env", ENV_PRIVATE_KEY))}
        return data


def sign_event(
    keys: Keys,
    kind: int,
    content: str,
    tags: Iterable[Sequence[str]] = (),
    created_at: int | None = None,
) -> Event:
    """Build and sign an event with *keys*.

    Args:
        keys: Signing keys.
        kind: Event kind.
        content: Event content.
        tags: Tags as sequences of strings.
        created_at: Unix timestamp; defaults to now.

    Returns:
        The signed [Event][relaypool.models.event.Event].
    """
    builder = EventBuilder(Kind(kind), content).tags([Tag.parse(list(t)) for t in tags])
    if created_at is not None:
        builder = builder.custom_created_at(Timestamp.from_secs(created_at))
    signed = builder.finalize(keys)
    return Event.from_json(signed.as_json())


def verify_event(event: Event) -> bool:
    """Check the id digest and Schnorr signature of *event* with ``nostr_sdk``.

    Returns False (never raises) for events ``nostr_sdk`` refuses to parse.
    """
    try:
        inner = event.to_nostr()
    except ValueError as e:
        logger.debug("event_parse_failed id=%s error=%s", event.id, e)
        return False
    return bool(inner.verify())
