"""
Session State Registry

One SessionState record per session id. The old single-session
behaviour is the special case of every caller using DEFAULT_SESSION_ID.

Records are created on first use, removed by end_session(), and pruned once
idle for longer than the idle timeout. Only the SessionCoordinator writes the
fields of a record; the registry only manages record lifetimes.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from dxsim.config import SESSION_IDLE_SECONDS, DEFAULT_SESSION_ID
from dxsim.core.datashapes import SessionState, utcnow
from dxsim.error_logging import session_logger, ErrorCodes


class SessionRegistry:
    def __init__(self,
                 idle_timeout: timedelta = timedelta(seconds=SESSION_IDLE_SECONDS),
                 clock: Callable[[], datetime] = utcnow):
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def get_or_create(self, session_id: Optional[str] = None) -> SessionState:
        """Fetch the record for a session, creating an empty one on first use."""
        session_id = session_id or DEFAULT_SESSION_ID
        now = self.clock()
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                self._prune_locked(now)
                state = SessionState(session_id=session_id, created_at=now, last_seen=now)
                self._sessions[session_id] = state
                session_logger.log_info(ErrorCodes.SESSION_CREATED, f"Session {session_id} created")
            else:
                state.last_seen = now
            return state

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.get(session_id)

    def end_session(self, session_id: str) -> bool:
        """Tear down a session record. Returns False if it didn't exist."""
        with self._lock:
            state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        session_logger.log_info(
            ErrorCodes.SESSION_ENDED,
            f"Session {session_id} ended (last case: {state.active_case_id})"
        )
        return True

    def prune_idle(self) -> int:
        with self._lock:
            return self._prune_locked(self.clock())

    def _prune_locked(self, now: datetime) -> int:
        # Sessions mid-reconciliation hold their lock; leave them alone
        stale = [
            sid for sid, state in self._sessions.items()
            if now - state.last_seen > self.idle_timeout and not state.lock.locked()
        ]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            session_logger.log_info(ErrorCodes.SESSION_PRUNED, f"Pruned {len(stale)} idle sessions", {"sessions": stale})
        return len(stale)

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
