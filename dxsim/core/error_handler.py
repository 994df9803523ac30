#!/usr/bin/env python3
"""
ErrorHandler - Centralized exception handling for the case session service

Every internal failure (store lookups, engine start-up, engine calls, stream
transport) is routed through here so it is logged once, counted per category,
and converted into a safe default by the caller instead of escaping to the
HTTP boundary.
"""

import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List

from dxsim.core.request_context import get_request_id


class ErrorSeverity(Enum):
    """Error severity levels with clear action mappings"""
    CRITICAL_STOP = "critical_stop"       # Caller must fail the request
    HIGH_DEGRADE = "high_degrade"         # Feature broken, continue degraded (e.g. no reference)
    MEDIUM_ALERT = "medium_alert"         # User should know (stream error event)
    LOW_DEBUG = "low_debug"               # Background issue, log only


class ErrorCategory(Enum):
    """Error categories covering the service's collaborators"""
    CASE_STORE = "case_store"                 # Supabase listing / lookups
    REFERENCE_RESOLUTION = "reference"        # Reference handle lookups
    SESSION_COORDINATION = "session"          # Session state reconciliation
    ENGINE_INITIALIZATION = "engine_init"     # Completion engine cold start
    ENGINE_INVOCATION = "engine_call"         # Completion engine calls
    CLIENT_TRANSPORT = "client_transport"     # Client-side HTTP failures
    GENERAL = "general"


class CaseStoreError(Exception):
    """The case store could not answer a query."""


class EngineInitializationError(Exception):
    """The completion engine client or its instructions could not be loaded."""


class EngineInvocationError(Exception):
    """The completion engine failed to produce an answer."""


class ErrorHandler:
    """Centralized error handling to replace scattered try/except blocks"""

    MAX_RECENT_ERRORS = 100

    def __init__(self, debug_mode: bool = False):
        self.debug_mode = debug_mode

        self.error_counts = defaultdict(int)        # error_key -> count
        self.suppressed_errors = defaultdict(int)   # error_key -> count of suppressed
        self.last_error_time = {}                   # error_key -> last occurrence time
        self.recent_errors: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

        self.logger = logging.getLogger('dxsim.errors')
        self.logger.setLevel(logging.DEBUG if debug_mode else logging.INFO)

    def handle_error(self,
                     error: Exception,
                     category: ErrorCategory,
                     severity: ErrorSeverity,
                     context: Optional[Dict[str, Any]] = None,
                     operation: str = "",
                     suppress_duplicate_minutes: int = 0) -> Optional[str]:
        """
        Record and log an error.

        Args:
            error: The exception that occurred
            category: What type of error this is
            severity: How severe this error is
            context: Case id, session id and anything else worth logging
            operation: What operation was being performed
            suppress_duplicate_minutes: Suppress identical errors inside this window

        Returns:
            The error id, or None if the error was suppressed as a duplicate
        """
        error_key = f"{category.value}_{type(error).__name__}"
        current_time = datetime.now()
        request_id = get_request_id()

        with self._lock:
            self.error_counts[error_key] += 1

            if self._should_suppress_error(error_key, current_time, suppress_duplicate_minutes):
                self.suppressed_errors[error_key] += 1
                return None

            self.last_error_time[error_key] = current_time

            error_id = str(uuid.uuid4())
            self.recent_errors.append({
                'error_id': error_id,
                'timestamp': current_time.isoformat(),
                'category': category.value,
                'severity': severity.value,
                'error_type': type(error).__name__,
                'message': str(error),
                'context': context or {},
                'operation': operation,
                'request_id': request_id,
            })
            if len(self.recent_errors) > self.MAX_RECENT_ERRORS:
                self.recent_errors.pop(0)

        message = f"{category.value} [{severity.value}] [{request_id}] {operation or 'operation'} failed: {error}"
        if context:
            message += f" | context={context}"
        if severity == ErrorSeverity.LOW_DEBUG:
            self.logger.debug(message)
        else:
            self.logger.error(message, exc_info=self.debug_mode)

        return error_id

    def _should_suppress_error(self, error_key: str, current_time: datetime, suppress_minutes: int) -> bool:
        if suppress_minutes <= 0 or error_key not in self.last_error_time:
            return False
        return current_time - self.last_error_time[error_key] < timedelta(minutes=suppress_minutes)

    def get_error_by_id(self, error_id: str) -> Optional[Dict[str, Any]]:
        for error in self.recent_errors:
            if error.get('error_id') == error_id:
                return error
        return None

    def get_error_summary(self) -> Dict[str, Any]:
        """Counts per category plus the last few errors, for /health."""
        with self._lock:
            return {
                'total_errors': sum(self.error_counts.values()),
                'suppressed': sum(self.suppressed_errors.values()),
                'by_key': dict(self.error_counts),
                'recent': self.recent_errors[-5:],
            }

    def clear(self):
        with self._lock:
            self.error_counts.clear()
            self.suppressed_errors.clear()
            self.last_error_time.clear()
            self.recent_errors.clear()
