#!/usr/bin/env python3
"""
Session Coordinator - keeps each session's AI context on the right case

Both the initialise and the chat endpoints go through ensure_context() before
touching the engine. State machine over (active case, requested case):

    cold start        -> create engine client + load instructions, once per process
    first case/switch -> resolve for the requested case, overwrite case id AND handle
    same case, cached -> nothing
    same case, absent -> resolve again only once the retry interval has passed
    same case, stale  -> handle aged past the freshness window, resolve again
    unidentified case -> detach_case(): clear case id AND handle

The returned CaseContext is a snapshot taken under the session lock; a chat
turn only ever uses its own snapshot, so a concurrent switch on the same
session can't hand it another case's document.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from dxsim.config import RESOLVE_RETRY_SECONDS
from dxsim.core.completion_engine import create_gemini_engine, load_system_prompt
from dxsim.core.datashapes import CaseContext, SessionState, case_number_from_doi, utcnow
from dxsim.core.error_handler import (
    ErrorHandler, ErrorCategory, ErrorSeverity, EngineInitializationError
)
from dxsim.core.reference_resolver import ReferenceResolver
from dxsim.core.session_state import SessionRegistry
from dxsim.error_logging import session_logger, engine_logger, ErrorCodes


class SessionCoordinator:
    def __init__(self,
                 registry: SessionRegistry,
                 resolver: ReferenceResolver,
                 engine_factory: Callable = create_gemini_engine,
                 prompt_loader: Callable[[], str] = load_system_prompt,
                 retry_interval: timedelta = timedelta(seconds=RESOLVE_RETRY_SECONDS),
                 clock: Callable[[], datetime] = utcnow,
                 error_handler: Optional[ErrorHandler] = None):
        self.registry = registry
        self.resolver = resolver
        self.engine_factory = engine_factory
        self.prompt_loader = prompt_loader
        self.retry_interval = retry_interval
        self.clock = clock
        self.error_handler = error_handler or ErrorHandler()

        # Process-wide; shared by every session
        self.engine = None
        self.system_prompt: Optional[str] = None
        self._engine_lock = threading.Lock()

    # =========================================================================
    # COLD START
    # =========================================================================

    def ensure_engine(self):
        """Create the engine client and load instructions, at most once per process."""
        if self.engine is not None:
            return self.engine

        with self._engine_lock:
            if self.engine is None:
                try:
                    system_prompt = self.prompt_loader()
                    engine = self.engine_factory()
                except Exception as e:
                    self.error_handler.handle_error(
                        e, ErrorCategory.ENGINE_INITIALIZATION, ErrorSeverity.CRITICAL_STOP,
                        operation="ensure_engine"
                    )
                    engine_logger.log_error(ErrorCodes.ENGINE_INIT_FAILED, f"Error initializing AI: {e}")
                    if isinstance(e, EngineInitializationError):
                        raise
                    raise EngineInitializationError(str(e)) from e

                self.system_prompt = system_prompt
                self.engine = engine
                session_logger.log_info(ErrorCodes.SESSION_COLD_START, "AI initialized successfully")
        return self.engine

    @property
    def engine_ready(self) -> bool:
        return self.engine is not None

    # =========================================================================
    # CASE CONTEXT
    # =========================================================================

    def ensure_context(self, session_id: Optional[str], case_id: Optional[str] = None,
                       doi: Optional[str] = None) -> CaseContext:
        """
        Reconcile a session with the case a request is about.

        Without a case id the session's current context is returned as-is.
        Raises EngineInitializationError if the cold start fails.
        """
        engine = self.ensure_engine()
        state = self.registry.get_or_create(session_id)

        with state.lock:
            state.engine = engine
            if case_id:
                self._reconcile(state, case_id, doi)
            return self._snapshot(state)

    def detach_case(self, session_id: Optional[str]) -> CaseContext:
        """
        Leave the session with no active case and no reference handle.
        Used when a request names a case it can't identify.
        """
        engine = self.ensure_engine()
        state = self.registry.get_or_create(session_id)

        with state.lock:
            state.engine = engine
            previous = state.active_case_id
            state.active_case_id = None
            state.reference_handle = None
            state.resolution_attempted_at = None
            if previous is not None:
                session_logger.log_info(
                    ErrorCodes.SESSION_SWITCH,
                    f"Session {state.session_id}: case switch from {previous} to an unidentified case "
                    f"(no reference available)"
                )
            return self._snapshot(state)

    def _reconcile(self, state: SessionState, case_id: str, doi: Optional[str]):
        now = self.clock()
        label = case_number_from_doi(doi) or case_id

        if state.active_case_id != case_id:
            previous = state.active_case_id
            handle = self.resolver.resolve(case_id, doi)
            # Case id and handle move together, even when the new handle is absent
            state.active_case_id = case_id
            state.reference_handle = handle
            state.resolution_attempted_at = now
            session_logger.log_info(
                ErrorCodes.SESSION_SWITCH,
                f"Session {state.session_id}: case switch from {previous} to {case_id} "
                f"({'reference loaded' if handle else 'no reference available'})"
            )
            return

        handle = state.reference_handle
        if handle is not None and self.resolver.is_fresh(handle):
            session_logger.log_info(
                ErrorCodes.SESSION_REUSE,
                f"Session {state.session_id}: using existing reference for case {label}"
            )
            return

        if handle is None and state.resolution_attempted_at is not None \
                and now - state.resolution_attempted_at < self.retry_interval:
            return

        state.reference_handle = self.resolver.resolve(case_id, doi)
        state.resolution_attempted_at = now
        session_logger.log_info(
            ErrorCodes.SESSION_RELOAD,
            f"Session {state.session_id}: reference {'reloaded' if state.reference_handle else 'still unavailable'} "
            f"for case {label}"
        )

    def _snapshot(self, state: SessionState) -> CaseContext:
        handle = state.reference_handle
        if handle is not None and (handle.case_id != state.active_case_id or not self.resolver.is_fresh(handle)):
            handle = None
        return CaseContext(session_id=state.session_id, case_id=state.active_case_id, reference_handle=handle)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def end_session(self, session_id: str) -> bool:
        return self.registry.end_session(session_id)

    def describe_session(self, session_id: str) -> Optional[dict]:
        state = self.registry.get(session_id)
        if state is None:
            return None
        with state.lock:
            return state.summary()
