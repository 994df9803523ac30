#!/usr/bin/env python3
"""
Client Stream Consumer - one conversation with the gatekeeper, client side

Owns the visible conversation, the history sent back to the server, and at
most one in-flight stream. A case switch (select_case) or a newer send
cancels the in-flight stream; events that still arrive for a stream that is
no longer current are dropped without touching the conversation and without
an error entry.

select_case() may be called from another thread (e.g. a UI thread) while
send_message() is blocked reading the stream.
"""

import json
import threading
from typing import Callable, Dict, List, Optional

import requests

from dxsim.config import BASE_URL
from dxsim.core.datashapes import (
    ActionType, Case, ConversationEntry, StreamEvent, StreamEventType, StreamHandle,
    TurnOutcome, TurnResult, history_entry, missing_case_field
)
from dxsim.core.error_handler import ErrorHandler, ErrorCategory, ErrorSeverity
from dxsim.core.request_context import new_session_id
from dxsim.error_logging import client_logger, ErrorCodes

SESSION_HEADER = 'X-DXSim-Session'
USER_ROLE = 'Dr.'
CASE_ROLE = 'Case'
ERROR_ROLE = 'Error'

GENERIC_FAILURE = 'Error processing your request. Please try again.'
INIT_FAILURE = 'Failed to initialize AI. Please refresh and try again.'
INVALID_CASE = 'Cannot send message: Case data is invalid. Please refresh and try again.'


class StreamFailure(Exception):
    """The server reported an error event, or the stream broke off."""


class StreamConsumer:
    def __init__(self,
                 base_url: str = BASE_URL,
                 http: requests.Session = None,
                 session_id: Optional[str] = None,
                 on_update: Optional[Callable[['StreamConsumer'], None]] = None,
                 timeout: float = 120,
                 error_handler: Optional[ErrorHandler] = None):
        self.base_url = base_url.rstrip('/')
        self.http = http or requests.Session()
        self.session_id = session_id or new_session_id()
        self.on_update = on_update
        self.timeout = timeout
        self.error_handler = error_handler or ErrorHandler()

        self.current_case: Optional[Case] = None
        self.conversation: List[ConversationEntry] = []
        self.history: List[Dict[str, str]] = []
        self.initialized_case_id: Optional[str] = None
        self.stream: Optional[StreamHandle] = None
        self.busy = False
        self._lock = threading.RLock()

    @property
    def active_case_id(self) -> Optional[str]:
        return self.current_case.id if self.current_case else None

    def _headers(self) -> Dict[str, str]:
        return {SESSION_HEADER: self.session_id}

    def _notify(self):
        if self.on_update:
            self.on_update(self)

    # =========================================================================
    # CASE SELECTION
    # =========================================================================

    def select_case(self, case: Case) -> bool:
        """
        Make a case active. Returns False if it already was.
        Switching cancels any in-flight stream and resets the conversation wholesale.
        """
        with self._lock:
            if self.current_case is not None and self.current_case.id == case.id:
                return False
            previous = self.active_case_id
            self._cancel_stream_locked()
            self.current_case = case
            self.conversation = [ConversationEntry(role=CASE_ROLE, message=case.clinical_vignette)]
            self.history = []
            self.initialized_case_id = None
            self.busy = False
        client_logger.log_info(ErrorCodes.CLIENT_ABANDONED, f"Active case switched from {previous} to {case.id}")
        self._notify()
        return True

    def cancel_stream(self):
        with self._lock:
            self._cancel_stream_locked()

    def _cancel_stream_locked(self):
        handle = self.stream
        self.stream = None
        if handle is None:
            return
        handle.cancel_event.set()
        self._close_response(handle)

    def _close_response(self, handle: StreamHandle):
        if handle.response is None:
            return
        try:
            handle.response.close()
        except Exception as e:
            client_logger.log_warning(ErrorCodes.CLIENT_CANCELLED, f"Closing stream for case {handle.owning_case_id} raised: {e}")

    def _is_current(self, handle: StreamHandle) -> bool:
        return (
            not handle.cancelled
            and self.stream is handle
            and self.active_case_id == handle.owning_case_id
        )

    def end_session(self) -> bool:
        """Ask the server to drop this client's session state."""
        self.cancel_stream()
        try:
            response = self.http.delete(f"{self.base_url}/api/session", headers=self._headers(), timeout=self.timeout)
            return bool(response.json().get('removed'))
        except (requests.exceptions.RequestException, ValueError) as e:
            client_logger.log_warning(ErrorCodes.CLIENT_FAILED, f"Ending session {self.session_id} failed: {e}")
            return False

    # =========================================================================
    # INITIALISATION
    # =========================================================================

    def initialize_case(self, case: Case) -> dict:
        response = self.http.post(
            f"{self.base_url}/api/initialize",
            json={'caseId': case.id, 'caseData': case.to_dict(), 'sessionId': self.session_id},
            headers=self._headers(),
            timeout=self.timeout
        )
        response.raise_for_status()
        payload = response.json()
        if not payload.get('success'):
            raise StreamFailure(payload.get('error') or 'Initialization failed')
        return payload

    # =========================================================================
    # CHAT TURN
    # =========================================================================

    def send_message(self, text: str, action: ActionType = ActionType.QUESTION) -> TurnResult:
        text = (text or '').strip()
        if not text:
            return TurnResult(TurnOutcome.FAILED, error='Empty message')

        with self._lock:
            case = self.current_case
            if case is None or missing_case_field(case.to_dict()) is not None:
                self.conversation.append(ConversationEntry(role=ERROR_ROLE, message=INVALID_CASE))
                invalid = True
            else:
                invalid = False
                self._cancel_stream_locked()
                handle = StreamHandle(owning_case_id=case.id)
                self.stream = handle
                self.busy = True
                self.conversation.append(ConversationEntry(role=USER_ROLE, message=text, action=action))
        self._notify()
        if invalid:
            return TurnResult(TurnOutcome.FAILED, error=INVALID_CASE)

        full_message = f"[{action.value}] {text}"

        if self.initialized_case_id != case.id:
            try:
                self.initialize_case(case)
            except Exception as e:
                return self._fail(handle, e, INIT_FAILURE, operation="initialize")
            with self._lock:
                if not self._is_current(handle):
                    return self._silent_end(handle)
                self.initialized_case_id = case.id
                self.history = [history_entry('assistant', case.clinical_vignette)]

        with self._lock:
            history = list(self.history)

        try:
            response = self.http.post(
                f"{self.base_url}/api/chat",
                json={
                    'message': full_message,
                    'conversationHistory': history,
                    'caseData': case.to_dict(),
                    'sessionId': self.session_id
                },
                headers=self._headers(),
                stream=True,
                timeout=self.timeout
            )
            handle.response = response
            if not self._is_current(handle):
                self._close_response(handle)
                return self._silent_end(handle)
            if response.status_code != 200:
                raise StreamFailure(f"HTTP error! status: {response.status_code}")

            for line in response.iter_lines(decode_unicode=True):
                if not self._is_current(handle):
                    self._close_response(handle)
                    return self._silent_end(handle)
                if not line or not line.startswith('data: '):
                    continue
                try:
                    event = StreamEvent.from_payload(json.loads(line[6:]))
                except (ValueError, TypeError) as e:
                    client_logger.log_warning(ErrorCodes.CLIENT_BAD_EVENT, f"Failed to parse SSE data: {e}")
                    continue

                result = self._apply_event(handle, action, full_message, event)
                if result is not None:
                    self._close_response(handle)
                    return result

            if not self._is_current(handle):
                return self._silent_end(handle)
            raise StreamFailure("Stream ended before completion")

        except Exception as e:
            if not self._is_current(handle):
                return self._silent_end(handle)
            return self._fail(handle, e, GENERIC_FAILURE, operation="chat")

    def _apply_event(self, handle: StreamHandle, action: ActionType, full_message: str,
                     event: StreamEvent) -> Optional[TurnResult]:
        """Apply one event to the conversation. Returns a TurnResult once the turn is over."""
        with self._lock:
            # Re-check under the lock: select_case() may have run since the read
            if not self._is_current(handle):
                return self._silent_end(handle)

            if event.type == StreamEventType.ERROR:
                raise StreamFailure(event.error)

            if event.type == StreamEventType.CHUNK:
                handle.buffer += event.content
                if handle.entry_index is None:
                    self.conversation.append(ConversationEntry(
                        role=action.response_label, message=handle.buffer, action=action
                    ))
                    handle.entry_index = len(self.conversation) - 1
                else:
                    self.conversation[handle.entry_index].message = handle.buffer
                result = None
            else:
                full_text = event.content
                if handle.entry_index is None:
                    self.conversation.append(ConversationEntry(
                        role=action.response_label, message=full_text, action=action
                    ))
                    handle.entry_index = len(self.conversation) - 1
                else:
                    self.conversation[handle.entry_index].message = full_text
                self.history.extend([
                    history_entry('user', full_message),
                    history_entry('assistant', full_text)
                ])
                self.stream = None
                self.busy = False
                result = TurnResult(TurnOutcome.COMPLETED, text=full_text)

        self._notify()
        return result

    def _silent_end(self, handle: StreamHandle) -> TurnResult:
        """The stream lost interest: case switched or superseded. Nothing is shown."""
        with self._lock:
            switched = self.active_case_id != handle.owning_case_id
            if self.stream is handle:
                self.stream = None
                self.busy = False
        if switched:
            client_logger.log_info(ErrorCodes.CLIENT_ABANDONED,
                                   f"Aborting stream - case switched away from {handle.owning_case_id}")
            return TurnResult(TurnOutcome.ABANDONED, text=handle.buffer)
        client_logger.log_info(ErrorCodes.CLIENT_CANCELLED, f"Stream for case {handle.owning_case_id} cancelled")
        return TurnResult(TurnOutcome.CANCELLED, text=handle.buffer)

    def _fail(self, handle: StreamHandle, error: Exception, visible_message: str, operation: str) -> TurnResult:
        with self._lock:
            if not self._is_current(handle):
                return self._silent_end(handle)
            self.conversation.append(ConversationEntry(role=ERROR_ROLE, message=visible_message))
            self.stream = None
            self.busy = False
        self._close_response(handle)
        detail = f"Initialization failed: {error}" if operation == "initialize" else str(error)
        self.error_handler.handle_error(
            error, ErrorCategory.CLIENT_TRANSPORT, ErrorSeverity.MEDIUM_ALERT,
            context={"case_id": handle.owning_case_id, "session_id": self.session_id},
            operation=operation
        )
        client_logger.log_error(ErrorCodes.CLIENT_FAILED, f"Error sending message: {detail}",
                                {"case_id": handle.owning_case_id})
        self._notify()
        return TurnResult(TurnOutcome.FAILED, text=handle.buffer, error=detail)
