"""
# Logging Manager

Central factory for the package loggers. Every module obtains its logger here:

```python
from tenant_mongodb.managers.logging_manager import get_logger

logger = get_logger()
db_logger = get_logger(prefix="[DATABASE]")
db_logger.info("Connected to %s", database_name)
# -> "2026-01-01 12:00:00,000 | INFO | tenant_mongodb | [DATABASE] Connected to acme"
```

All loggers are children of the `tenant_mongodb` stdlib logger, so a host process can
re-route or silence the package with standard `logging` configuration. A stderr handler is
attached once, the first time a logger is requested, unless the host already configured one.
"""

import logging
import sys
from typing import Any, MutableMapping, Tuple

from tenant_mongodb.config import settings

ROOT_LOGGER_NAME = "tenant_mongodb"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_configured = False


class PrefixedLogger(logging.LoggerAdapter):
    """Logger adapter that prepends a fixed tag such as `[DATABASE]` to every message."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        prefix = self.extra.get("prefix") if self.extra else None
        if prefix:
            return f"{prefix} {msg}", kwargs
        return msg, kwargs


def _configure_root_logger() -> None:
    global _configured
    if _configured:
        return
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL)
    _configured = True


def get_logger(name: str = ROOT_LOGGER_NAME, prefix: str = "") -> PrefixedLogger:
    """
    Return a package logger, optionally tagging each message with `prefix`.

    Args:
        name (`str`): Logger name. Names outside the package namespace are nested under it.
        prefix (`str`): Tag prepended to every message, e.g. `"[DATABASE]"`.
    """
    _configure_root_logger()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return PrefixedLogger(logging.getLogger(name), {"prefix": prefix})
