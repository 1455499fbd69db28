"""
Session id -> agent id cache, fed by hook notifications.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class SessionAgentMap:
    """Thread-safe mapping of CLI session ids to registry agent ids."""

    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def set(self, session_id: str, agent_id: str) -> None:
        with self._lock:
            self._sessions[session_id] = agent_id

    def get(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def clear_for_agent(self, agent_id: str) -> int:
        """Drop every session mapped to agent_id. Returns how many were dropped."""
        with self._lock:
            sessions = [sid for sid, aid in self._sessions.items() if aid == agent_id]
            for sid in sessions:
                del self._sessions[sid]
        return len(sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def validate(self, is_valid: Callable[[str], bool]) -> List[str]:
        """
        Drop mappings whose agent fails is_valid.

        Returns:
            The removed session ids
        """
        with self._lock:
            snapshot = list(self._sessions.items())
        invalid = [sid for sid, aid in snapshot if not is_valid(aid)]
        with self._lock:
            for sid in invalid:
                self._sessions.pop(sid, None)
        if invalid:
            logger.debug(f"Dropped {len(invalid)} invalid session mappings")
        return invalid

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
