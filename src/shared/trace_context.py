"""Request trace-id propagation via contextvars.

The gateway binds a trace id on request entry (from X-Request-ID or freshly
generated); ledger, session and webhook logs read it via get_trace_id().
"""

from __future__ import annotations

from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

current_trace_id: ContextVar[str] = ContextVar("current_trace_id", default="")


def get_trace_id() -> str:
    """Return the current trace_id (empty string if not set)."""
    return current_trace_id.get()


@contextmanager
def trace_context(trace_id: str | None = None) -> Generator[str, None, None]:
    """Bind a trace_id for the duration of the block, restoring the previous one.

    A new UUID4 hex is generated when trace_id is None or empty.
    """
    effective_id = trace_id if trace_id else uuid4().hex
    token = current_trace_id.set(effective_id)
    try:
        yield effective_id
    finally:
        current_trace_id.reset(token)
