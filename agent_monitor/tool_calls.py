"""
Tool call correlation.

Pairs ``tool_start`` and ``tool_end`` detections from the same terminal into
completed call records and forwards detailed usage to storage when the
terminal is bound to a session.

Open calls whose end never shows up stay open until the terminal is cleared;
there is no timeout.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import TOOL_RESULT_PREVIEW_CHARS
from .events import EventBus, TOOL_START, TOOL_END
from .models import ToolCallRecord

logger = logging.getLogger(__name__)

UsageSink = Callable[[Dict[str, Any]], Any]


class ToolCallCorrelator:
    """Tracks open tool calls per terminal and closes them on matching ends."""

    def __init__(self, events: Optional[EventBus] = None, record_usage: Optional[UsageSink] = None):
        """
        Initialize the correlator.

        Args:
            events: Bus to publish tool:start / tool:end on
            record_usage: Storage callback receiving one usage dict per closed
                call (state_db.record_detailed_tool_usage bound to a db path)
        """
        self.events = events or EventBus("tool-calls")
        self.record_usage = record_usage
        # call_id -> (terminal_id, record); dict order doubles as start order
        self._calls: Dict[str, Tuple[int, ToolCallRecord]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_call_id(terminal_id: int, tool_name: str, start_time: float) -> str:
        return f"{terminal_id}-{tool_name}-{int(start_time * 1000)}"

    def open_call(self, terminal_id: int, tool_name: str, timestamp: float, tool_input: str = '') -> str:
        """
        Record the start of a tool call.

        Returns:
            The call id assigned to the open record
        """
        base_id = self.make_call_id(terminal_id, tool_name, timestamp)
        with self._lock:
            call_id = base_id
            suffix = 1
            while call_id in self._calls:
                suffix += 1
                call_id = f"{base_id}-{suffix}"
            self._calls[call_id] = (
                terminal_id,
                ToolCallRecord(name=tool_name, input=tool_input, start_time=timestamp),
            )

        self.events.emit(TOOL_START, {
            'terminal_id': terminal_id,
            'tool_name': tool_name,
            'call_id': call_id,
        })
        return call_id

    def close_call(
        self,
        terminal_id: int,
        tool_name: str,
        timestamp: float,
        success: bool = True,
        result: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[ToolCallRecord]:
        """
        Close the oldest open call for this terminal and tool.

        Returns:
            The closed record, or None if no open call matched.
        """
        with self._lock:
            match = None
            for call_id, (call_terminal, call) in self._calls.items():
                if call_terminal == terminal_id and call.name == tool_name and call.end_time is None:
                    match = call_id
                    break
            if match is None:
                logger.debug(f"No open {tool_name} call on terminal {terminal_id} to close")
                return None
            _, call = self._calls.pop(match)

        call.end_time = timestamp
        call.success = bool(success)
        if result:
            call.result = result

        if session_id and self.record_usage:
            usage = {
                'session_id': session_id,
                'tool_name': call.name,
                'tool_input': call.input,
                'tool_result_preview': call.result[:TOOL_RESULT_PREVIEW_CHARS] if call.result else None,
                'success': call.success,
                'duration_ms': call.duration_ms,
                'token_cost': None,
            }
            try:
                self.record_usage(usage)
            except Exception as e:
                logger.error(f"Failed to record tool usage for {call.name} (session {session_id}): {e}")

        self.events.emit(TOOL_END, {
            'terminal_id': terminal_id,
            'tool_name': tool_name,
            'call_id': match,
            'success': call.success,
            'duration_ms': call.duration_ms,
        })
        return call

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_active_calls(self, terminal_id: int) -> List[ToolCallRecord]:
        with self._lock:
            return [call for term, call in self._calls.values() if term == terminal_id]

    def has_active_calls(self, terminal_id: int) -> bool:
        with self._lock:
            return any(term == terminal_id for term, _ in self._calls.values())

    def get_all_active_calls(self) -> Dict[str, ToolCallRecord]:
        with self._lock:
            return {call_id: call for call_id, (_, call) in self._calls.items()}

    def terminal_ids(self) -> List[int]:
        with self._lock:
            return sorted({term for term, _ in self._calls.values()})

    # ========================================================================
    # CLEANUP
    # ========================================================================

    def clear_terminal(self, terminal_id: int) -> int:
        """Drop every open call of a terminal. Returns how many were dropped."""
        with self._lock:
            stale = [call_id for call_id, (term, _) in self._calls.items() if term == terminal_id]
            for call_id in stale:
                del self._calls[call_id]
        if stale:
            logger.debug(f"Dropped {len(stale)} open tool calls for terminal {terminal_id}")
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._calls.clear()
