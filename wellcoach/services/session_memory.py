"""
In-process session memory: bounded history, adaptation notes and user facts per session.
"""

import asyncio
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from ..models.core import Turn
from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

ENERGY_NOTE_PATTERN = re.compile(r'Previous energy score:\s*(\d+)/100')


def energy_note(score: int) -> str:
    """Adaptation note recording the stabilized score of a completed turn."""
    return f'Previous energy score: {score}/100 - maintain consistency unless user reports significant change'


@dataclass
class SessionState:
    session_id: str
    history: Deque[Turn]
    adaptation_notes: Deque[str]
    user_facts: List[str] = field(default_factory=list)
    last_activity: float = 0.0


class SessionMemoryStore:
    """Keyed store of session state with create-on-first-use and TTL eviction.

    History is a ring bounded by history_cap: appending past the cap silently
    drops the oldest turn. Reads and writes never cross session keys.
    """

    def __init__(self, config: MemoryConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._sessions: Dict[str, SessionState] = {}
        self._turn_locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.RLock()

    def _session(self, session_id: str) -> SessionState:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                state = SessionState(session_id=session_id,
                                     history=deque(maxlen=self.config.history_cap),
                                     adaptation_notes=deque(maxlen=self.config.adaptation_note_cap))
                self._sessions[session_id] = state
                logger.debug(f'Created session memory for {session_id[:8]}')
            state.last_activity = self._clock()
            return state

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing turns for one session key."""
        with self._lock:
            lock = self._turn_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._turn_locks[session_id] = lock
            return lock

    def append(self, session_id: str, turn: Turn) -> None:
        with self._lock:
            self._session(session_id).history.append(turn)

    def recent_history(self, session_id: str, limit: Optional[int] = None) -> List[Turn]:
        """Most recent turns, oldest first, at most limit (default recent_window)."""
        limit = self.config.recent_window if limit is None else limit
        with self._lock:
            history = list(self._session(session_id).history)
        return history[-limit:] if limit > 0 else []

    def add_adaptation_note(self, session_id: str, note: str) -> None:
        if not note or not note.strip():
            return
        with self._lock:
            self._session(session_id).adaptation_notes.append(note.strip())

    def add_user_fact(self, session_id: str, fact: str) -> None:
        if not fact or not fact.strip():
            return
        fact = fact.strip()
        with self._lock:
            state = self._session(session_id)
            if fact in state.user_facts:
                return
            state.user_facts.append(fact)
            del state.user_facts[:-self.config.user_fact_cap]

    def facts(self, session_id: str) -> List[str]:
        with self._lock:
            return list(self._session(session_id).user_facts)

    def notes(self, session_id: str, limit: Optional[int] = None) -> List[str]:
        """Most recent adaptation notes, at most limit (default recent_notes)."""
        limit = self.config.recent_notes if limit is None else limit
        with self._lock:
            notes = list(self._session(session_id).adaptation_notes)
        return notes[-limit:] if limit > 0 else []

    def size(self, session_id: str) -> int:
        with self._lock:
            return len(self._session(session_id).history)

    def last_energy_score(self, session_id: str) -> Optional[int]:
        """Energy score recorded by the latest completed full turn, if any."""
        with self._lock:
            notes = list(self._session(session_id).adaptation_notes)
        for note in reversed(notes):
            match = ENERGY_NOTE_PATTERN.search(note)
            if match:
                return int(match.group(1))
        return None

    def snapshot(self, session_id: str) -> Dict[str, object]:
        """Read-only view of a session for status reporting."""
        with self._lock:
            state = self._session(session_id)
            return {
                'session_id': session_id,
                'memory_size': len(state.history),
                'history': [turn.to_dict() for turn in state.history],
                'adaptation_notes': list(state.adaptation_notes),
                'user_facts': list(state.user_facts),
            }

    def evict_expired(self) -> int:
        """Remove every session idle for longer than the TTL.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        with self._lock:
            expired = [
                session_id for session_id, state in self._sessions.items()
                if now - state.last_activity > self.config.session_ttl_seconds
            ]
            for session_id in expired:
                del self._sessions[session_id]
                lock = self._turn_locks.get(session_id)
                if lock is not None and not lock.locked():
                    del self._turn_locks[session_id]

        if expired:
            logger.info(f'Evicted {len(expired)} expired sessions')
        return len(expired)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
