"""
Streaming Response Driver

The engine answers in one piece. The driver makes that one call, then
re-emits the answer word by word as chunk events so the client can render
progressively, finishing with a done event (or a single error event).

respond() is a generator: a consumer that stops reading and closes it, or
sets the cancel event, stops emission at the next chunk boundary.
"""

import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from dxsim.config import STREAM_CHUNK_DELAY, GEMINI_FILE_URI_PREFIX
from dxsim.core.datashapes import CaseContext, EngineRole, EngineTurn, StreamEvent
from dxsim.core.error_handler import ErrorHandler, ErrorCategory, ErrorSeverity, EngineInitializationError
from dxsim.error_logging import stream_logger, ErrorCodes


def split_into_chunks(text: str) -> Iterator[Tuple[str, str]]:
    """
    Yield (piece, accumulated) word by word.
    Pieces keep their leading space so joining them rebuilds the text exactly.
    """
    if not text:
        return
    accumulated = ""
    for i, word in enumerate(text.split(' ')):
        piece = word if i == 0 else ' ' + word
        accumulated += piece
        yield piece, accumulated


def engine_role(history_role: str) -> EngineRole:
    return EngineRole.MODEL if history_role == 'assistant' else EngineRole.USER


class ResponseDriver:
    def __init__(self, coordinator,
                 chunk_delay: float = STREAM_CHUNK_DELAY,
                 sleep: Callable[[float], None] = time.sleep,
                 attachment_prefix: str = GEMINI_FILE_URI_PREFIX,
                 error_handler: Optional[ErrorHandler] = None):
        self.coordinator = coordinator
        self.chunk_delay = chunk_delay
        self.sleep = sleep
        self.attachment_prefix = attachment_prefix
        self.error_handler = error_handler or ErrorHandler()

    def reference_turn(self, context: CaseContext) -> Optional[EngineTurn]:
        """The document attachment for this turn, if the snapshot carries a servable one."""
        handle = context.reference_handle
        if handle is None or handle.case_id != context.case_id:
            return None
        if not self.coordinator.resolver.is_fresh(handle):
            return None
        if not handle.uri.startswith(self.attachment_prefix):
            return None
        return EngineTurn(role=EngineRole.USER, file_uri=handle.uri, mime_type=handle.mime_type)

    def build_turns(self, message: str, history: List[Dict[str, str]], context: CaseContext) -> List[EngineTurn]:
        turns = []

        attachment = self.reference_turn(context)
        if attachment is not None:
            turns.append(attachment)
        else:
            stream_logger.log_info(
                ErrorCodes.STREAM_NO_REFERENCE,
                f"No reference context for case {context.case_id} - continuing without file context"
            )

        for entry in history or []:
            turns.append(EngineTurn(role=engine_role(entry.get('role')), text=entry.get('content', '')))

        turns.append(EngineTurn(role=EngineRole.USER, text=message))
        return turns

    def respond(self, message: str, history: List[Dict[str, str]], context: CaseContext,
                cancel_event: Optional[threading.Event] = None) -> Iterator[StreamEvent]:
        """Generate the event sequence for one chat turn."""
        turns = self.build_turns(message, history, context)
        stream_logger.log_info(
            ErrorCodes.STREAM_STARTED,
            f"Session {context.session_id}: answering for case {context.case_id} with {len(turns)} turns"
        )

        try:
            engine = self.coordinator.engine
            if engine is None:
                raise EngineInitializationError("Gatekeeper not initialized")
            full_response = engine.complete(self.coordinator.system_prompt, turns)
        except Exception as e:
            self.error_handler.handle_error(
                e, ErrorCategory.ENGINE_INVOCATION, ErrorSeverity.MEDIUM_ALERT,
                context={"session_id": context.session_id, "case_id": context.case_id},
                operation="complete"
            )
            stream_logger.log_error(ErrorCodes.STREAM_ERROR, f"Streaming error: {e}")
            yield StreamEvent.failure(f"Failed to process message: {e}")
            return

        emitted = 0
        finished = False
        try:
            for piece, accumulated in split_into_chunks(full_response):
                if cancel_event is not None and cancel_event.is_set():
                    return
                yield StreamEvent.chunk(piece, accumulated)
                emitted += 1
                if self.chunk_delay:
                    self.sleep(self.chunk_delay)

            if cancel_event is not None and cancel_event.is_set():
                return
            yield StreamEvent.done(full_response)
            finished = True
            stream_logger.log_info(ErrorCodes.STREAM_COMPLETE, f"Streamed {emitted} chunks for case {context.case_id}")
        finally:
            if not finished:
                stream_logger.log_info(
                    ErrorCodes.STREAM_CANCELLED,
                    f"Stream for case {context.case_id} stopped by consumer after {emitted} chunks"
                )
