#!/usr/bin/env python3
"""
datashapes.py - Centralized Data Shape Definitions

All dataclasses and enums shared by the case session core live here.
Almost no logic - just what the data looks like and how it maps to the wire.

Other files import from here to ensure consistent structures:
    from dxsim.core.datashapes import Case, ReferenceHandle, StreamEvent
"""

import json
import re
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


REQUIRED_CASE_FIELDS = ('id', 'doi', 'title', 'clinical_vignette')
DOI_CASE_NUMBER = re.compile(r'NEJMcpc(\d+)$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def case_number_from_doi(doi: Optional[str]) -> Optional[str]:
    """Extract the NEJM case number from a DOI like 10.1056/NEJMcpc2300123"""
    if not doi:
        return None
    match = DOI_CASE_NUMBER.search(doi)
    return match.group(1) if match else None


# =============================================================================
# ENUMS
# =============================================================================

class StreamEventType(Enum):
    """Event kinds on the chat event stream."""
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class EngineRole(Enum):
    """Role vocabulary understood by the completion engine."""
    USER = "user"
    MODEL = "model"


class ActionType(Enum):
    """What the user is asking the gatekeeper for."""
    QUESTION = "Question"
    TEST = "Test"
    DIAGNOSIS = "Diagnosis"

    @property
    def response_label(self) -> str:
        return {
            ActionType.QUESTION: "Patient",
            ActionType.TEST: "Test Results",
            ActionType.DIAGNOSIS: "Final Diagnosis",
        }[self]


class TurnOutcome(Enum):
    """How a client-side chat turn ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"      # Case switched under the stream
    CANCELLED = "cancelled"      # Superseded by a newer send


# =============================================================================
# CASE LIBRARY
# =============================================================================

@dataclass
class Case:
    """
    A clinical case record as stored in the case library.
    Read-only from the session core's point of view.
    """
    id: str
    doi: str
    title: str
    clinical_vignette: str
    short_title: Optional[str] = None
    year: Optional[int] = None
    dataset: Optional[str] = None
    date_added: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Case':
        known = {name: record.get(name) for name in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def case_number(self) -> Optional[str]:
        return case_number_from_doi(self.doi)

    @property
    def display_title(self) -> str:
        return self.short_title or f"Case {self.id[:8]}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def missing_case_field(record: Any) -> Optional[str]:
    """
    Return the first required field that is missing or blank, None if the record is usable.
    Non-dict records report as '<record>'.
    """
    if not isinstance(record, dict):
        return '<record>'
    for name in REQUIRED_CASE_FIELDS:
        value = record.get(name)
        if not value or (isinstance(value, str) and value.strip() == ''):
            return name
    return None


@dataclass
class Dataset:
    """A case collection (e.g. NEJM CPCs)."""
    id: str
    name: str
    full_name: Optional[str] = None
    description: Optional[str] = None
    website_url: Optional[str] = None
    total_cases: Optional[int] = None
    year_range: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Dataset':
        known = {name: record.get(name) for name in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# SESSION CORE
# =============================================================================

@dataclass(frozen=True)
class ReferenceHandle:
    """
    Locator for a case's reference document in the engine's file store.
    Written by the batch ingestion job, only ever read here.
    """
    case_id: str
    uri: str
    uploaded_at: datetime
    mime_type: str = "application/pdf"
    name: Optional[str] = None

    def age(self, now: datetime) -> timedelta:
        return now - self.uploaded_at

    def is_fresh(self, now: datetime, window: timedelta) -> bool:
        return self.age(now) < window


@dataclass
class SessionState:
    """
    One session's view of the AI conversation.

    active_case_id and reference_handle are only ever written together
    (see SessionCoordinator); the lock serialises that.
    """
    session_id: str
    active_case_id: Optional[str] = None
    reference_handle: Optional[ReferenceHandle] = None
    engine: Any = None
    resolution_attempted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "active_case_id": self.active_case_id,
            "reference_uri": self.reference_handle.uri if self.reference_handle else None,
            "engine_ready": self.engine is not None,
            "created_at": self.created_at.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass(frozen=True)
class CaseContext:
    """
    Immutable snapshot handed to a single chat turn.
    A turn only ever reads this, never the live SessionState.
    """
    session_id: str
    case_id: Optional[str]
    reference_handle: Optional[ReferenceHandle] = None

    @property
    def reference_uri(self) -> Optional[str]:
        return self.reference_handle.uri if self.reference_handle else None


@dataclass
class EngineTurn:
    """One content turn for the completion engine: plain text or a document attachment."""
    role: EngineRole
    text: Optional[str] = None
    file_uri: Optional[str] = None
    mime_type: Optional[str] = None

    @property
    def is_attachment(self) -> bool:
        return self.file_uri is not None


@dataclass(frozen=True)
class StreamEvent:
    """
    One event on the chat stream.
    Wire shapes: chunk {type, content, fullContent}, done {type, content}, error {type, error}
    """
    type: StreamEventType
    content: str = ""
    full_content: str = ""
    error: Optional[str] = None

    @classmethod
    def chunk(cls, piece: str, accumulated: str) -> 'StreamEvent':
        return cls(StreamEventType.CHUNK, content=piece, full_content=accumulated)

    @classmethod
    def done(cls, text: str) -> 'StreamEvent':
        return cls(StreamEventType.DONE, content=text, full_content=text)

    @classmethod
    def failure(cls, message: str) -> 'StreamEvent':
        return cls(StreamEventType.ERROR, error=message)

    def to_payload(self) -> Dict[str, Any]:
        if self.type == StreamEventType.CHUNK:
            return {"type": "chunk", "content": self.content, "fullContent": self.full_content}
        if self.type == StreamEventType.DONE:
            return {"type": "done", "content": self.content}
        return {"type": "error", "error": self.error}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_payload())}\n\n"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'StreamEvent':
        kind = StreamEventType(payload.get("type"))
        if kind == StreamEventType.CHUNK:
            return cls.chunk(payload.get("content", ""), payload.get("fullContent", ""))
        if kind == StreamEventType.DONE:
            return cls.done(payload.get("content", ""))
        return cls.failure(payload.get("error") or "Unknown error")


# =============================================================================
# CLIENT SIDE
# =============================================================================

@dataclass
class ConversationEntry:
    """One visible bubble in the conversation view."""
    role: str                          # "Dr.", a response label, "Case" or "Error"
    message: str
    action: Optional[ActionType] = None


@dataclass
class StreamHandle:
    """Client-side bookkeeping for one in-flight chat turn."""
    owning_case_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    buffer: str = ""
    response: Any = None
    entry_index: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class TurnResult:
    """What a client-side send returned."""
    outcome: TurnOutcome
    text: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome.value, "text": self.text, "error": self.error}


def history_entry(role: str, content: str) -> Dict[str, str]:
    return {"role": role, "content": content}


def normalise_history(history: Optional[List[Any]]) -> List[Dict[str, str]]:
    """Keep well-formed {role, content} pairs from a request body."""
    cleaned = []
    for item in history or []:
        if isinstance(item, dict) and isinstance(item.get("content"), str):
            cleaned.append(history_entry(str(item.get("role", "user")), item["content"]))
    return cleaned
