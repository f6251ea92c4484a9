"""
Structured logging on top of the standard library.

Log lines are an event name followed by ``key=value`` pairs, or a single
JSON object per line when ``json_output`` is enabled:

```text
info backend relay_connected url=wss://relay.damus.io attempt=1
```

[Logger][nostrsync.core.logger.Logger] attaches the pairs to the
``LogRecord`` as the ``structured_kv`` extra; the
[StructuredFormatter][nostrsync.core.logger.StructuredFormatter] installed on
the root handler renders them. Modules in ``models``, ``nips`` and ``utils``
use plain ``logging.getLogger(__name__)`` and still come out in the same
``level name message`` shape.

Examples:
    ```python
    from nostrsync.core.logger import Logger

    logger = Logger("backend")
    logger.info("event_confirmed", event_id="ab12...", relay="wss://nos.lol")
    ```
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, ClassVar


def _truncate(value: Any, limit: int | None) -> Any:
    """Return *value* unchanged, or its string form cut to *limit* chars."""
    if not limit:
        return value
    text = str(value)
    if len(text) <= limit:
        return value
    return text[:limit] + f"...<truncated {len(text) - limit} chars>"


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Render *kwargs* as space-separated ``key=value`` pairs.

    Values that are empty or contain spaces, ``=`` or quotes are wrapped in
    double quotes with backslash escaping, so the output stays parseable.

    Args:
        kwargs: Pairs to render, in insertion order.
        max_value_length: Per-value truncation limit, ``None`` to disable.
        prefix: Prepended when the output is non-empty.

    Returns:
        The rendered string, or ``""`` when *kwargs* is empty.
    """
    if not kwargs:
        return ""

    rendered = []
    for key, value in kwargs.items():
        text = str(_truncate(value, max_value_length))
        if not text or any(ch in text for ch in " =\"'"):
            text = '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
        rendered.append(f"{key}={text}")
    return prefix + " ".join(rendered)


class StructuredFormatter(logging.Formatter):
    """Render every record as ``level name message key=value ...``."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        pairs: dict[str, Any] = getattr(record, "structured_kv", {})
        if pairs:
            line += format_kv_pairs(pairs)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class Logger:
    """Named logger whose methods accept structured keyword arguments.

    Mirrors the ``logging.Logger`` level methods, each taking an event name
    plus arbitrary ``**kwargs``. Values are truncated before they reach the
    handler so a hostile relay cannot flood the log with one huge field.

    Examples:
        ```python
        logger = Logger("relay_pool")
        logger.warning("publish_failed", relay="wss://x", error="timeout")
        ```
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
    ) -> None:
        """Create a logger bound to ``logging.getLogger(name)``.

        Args:
            name: Logger name, usually the component name.
            json_output: Emit one JSON object per record instead of pairs.
            max_value_length: Truncation limit per value (default 1000).
        """
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = (
            self._DEFAULT_MAX_VALUE_LENGTH if max_value_length is None else max_value_length
        )

    @property
    def name(self) -> str:
        return self._logger.name

    def _emit(
        self, level: int, msg: str, kwargs: dict[str, Any], *, exc_info: bool = False
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields = {k: _truncate(v, self._max_value_length) for k, v in kwargs.items()}
        if self._json_output:
            payload = {
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "service": self._logger.name,
                "message": msg,
                **fields,
            }
            self._logger.log(level, json.dumps(payload, default=str), exc_info=exc_info)
        else:
            extra = {"structured_kv": fields} if fields else {}
            self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._emit(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._emit(logging.WARNING, msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._emit(logging.ERROR, msg, kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self._emit(logging.CRITICAL, msg, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log at ERROR with the active exception's traceback attached."""
        self._emit(logging.ERROR, msg, kwargs, exc_info=True)
