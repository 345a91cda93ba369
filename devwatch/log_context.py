"""Logging context: ContextVar-based log enrichment for listener tasks.

Every log record is automatically enriched with a ``[source]`` prefix via a
`ContextFilter` attached to the root logger handlers. The source is the tag
(or name) of the subprocess whose events are being handled.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar

# Copied into every task created by asyncio.create_task().
ctx_source: ContextVar[str | None] = ContextVar("ctx_source", default=None)


class ContextFilter(logging.Filter):
    """Inject ContextVar values into every LogRecord as ``record.ctx``."""

    def filter(self, record: logging.LogRecord) -> bool:
        source = ctx_source.get(None)
        record.ctx = f"[{source}] " if source else ""
        return True

