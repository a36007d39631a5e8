"""
Structured logging on top of the standard library ``logging`` module.

Every record is an event name plus keyword fields. Fields are rendered as
``key=value`` pairs by [StructuredFormatter][relaypool.core.logger.StructuredFormatter],
or the whole record is serialized as one JSON object when the logger is built
with ``json_output=True``. Oversized values are clipped so a hostile relay
cannot flood the logs with a single frame.

Handlers and levels stay under the application's control: this module never
calls ``logging.basicConfig`` or attaches handlers.

Examples:
    ```python
    from relaypool.core.logger import Logger

    logger = Logger("relaypool.pool")
    logger.info("relay_added", url="wss://relay.damus.io")
    # relay_added url=wss://relay.damus.io

    conn_logger = logger.bind(relay="wss://nos.lol")
    conn_logger.warning("relay_connect_failed", error="timeout")
    # relay_connect_failed relay=wss://nos.lol error=timeout
    ```
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, ClassVar


_QUOTE_TRIGGERS = (" ", "=", '"', "'")


def _clip(text: str, limit: int | None) -> str:
    if not limit or len(text) <= limit:
        return text
    return f"{text[:limit]}...<truncated {len(text) - limit} chars>"


def _render_value(value: Any, limit: int | None) -> str:
    text = _clip(str(value), limit)
    if text and not any(t in text for t in _QUOTE_TRIGGERS):
        return text
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Render *kwargs* as ``key=value`` pairs separated by spaces.

    Empty values and values containing spaces, ``=`` or quotes are wrapped
    in double quotes with backslash escaping. ``max_value_length=None``
    disables clipping. Returns ``""`` for an empty mapping, otherwise the
    pairs preceded by *prefix*.
    """
    if not kwargs:
        return ""
    return prefix + " ".join(
        f"{key}={_render_value(value, max_value_length)}" for key, value in kwargs.items()
    )


class StructuredFormatter(logging.Formatter):
    """``logging.Formatter`` producing ``level logger message key=value ...`` lines.

    Fields come from the ``structured_kv`` attribute that
    [Logger][relaypool.core.logger.Logger] attaches to its records; records
    from plain stdlib loggers are printed without fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        fields: dict[str, Any] = getattr(record, "structured_kv", {})
        return line + format_kv_pairs(fields) if fields else line


class Logger:
    """Thin structured facade over ``logging.getLogger(name)``.

    Args:
        name: Name of the underlying stdlib logger.
        json_output: Emit each record as a JSON object in the message.
        max_value_length: Clip field values longer than this (default 1000).
        context: Fields attached to every record before the call's own
            keyword arguments, which win on conflicts.
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = (
            self._DEFAULT_MAX_VALUE_LENGTH if max_value_length is None else max_value_length
        )
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **context: Any) -> Logger:
        """Child logger carrying *context* on top of this logger's context."""
        return Logger(
            self.name,
            json_output=self._json_output,
            max_value_length=self._max_value_length,
            context={**self._context, **context},
        )

    def is_enabled_for(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def log(self, level: int, msg: str, *, exc_info: bool = False, **kwargs: Any) -> None:
        """Emit *msg* at *level* with *kwargs* as structured fields."""
        if not self._logger.isEnabledFor(level):
            return
        fields = {**self._context, **kwargs}
        if self._json_output:
            self._logger.log(level, self._json_line(level, msg, fields), exc_info=exc_info)
            return
        extra = {"structured_kv": self._clip_fields(fields)} if fields else {}
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, **kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.CRITICAL, msg, **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """ERROR record with the active exception's traceback attached."""
        self.log(logging.ERROR, msg, exc_info=True, **kwargs)

    # -- Rendering ---------------------------------------------------------------

    def _clip_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        # Values are kept as-is unless their string form is too long.
        limit = self._max_value_length
        return {
            key: _clip(str(value), limit) if limit and len(str(value)) > limit else value
            for key, value in fields.items()
        }

    def _json_line(self, level: int, msg: str, fields: dict[str, Any]) -> str:
        payload = {
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
            "level": logging.getLevelName(level).lower(),
            "logger": self.name,
            "message": msg,
            **fields,
        }
        return json.dumps(payload, default=str)
