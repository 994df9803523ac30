"""
Shared Request Context Module

Holds the request_id ContextVar set by the server's log_request decorator.
SectionLogger entries and ErrorHandler records stamp it on everything they
log, so a log line can be traced back to the request that caused it.
"""
from contextvars import ContextVar
from typing import Optional
from uuid_extensions import uuid7

# Single source of truth for request ID tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def get_request_id() -> str:
    """Get the current request ID from context (returns 'unknown' if not in request context)"""
    return request_id_var.get() or "unknown"


def set_request_id(request_id: str = None) -> str:
    """Set the request ID in context. If none provided, generates UUID7."""
    if request_id is None:
        request_id = str(uuid7())
    request_id_var.set(request_id)
    return request_id


def new_session_id() -> str:
    """Fresh time-ordered session identifier for clients that don't bring their own."""
    return str(uuid7())
