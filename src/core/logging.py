"""
Structured logging for the query core.

`get_logger` returns a plain module logger; `bind` wraps it so that every
record carries ``key=value`` context (warehouse, query id, database ...).
"""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

from src.core.config import get_settings

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    settings = get_settings()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


class ContextAdapter(logging.LoggerAdapter):
    """Prefixes each message with the bound ``key=value`` pairs."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        context = "  ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"[{context}] {msg}", kwargs


def bind(logger: logging.Logger, **context: Any) -> ContextAdapter:
    return ContextAdapter(logger, context)
