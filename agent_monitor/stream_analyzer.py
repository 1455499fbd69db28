"""
Real-time terminal output analysis.

StreamAnalyzer scans chunks of raw PTY output against the pattern table,
keeps a bounded output buffer and rolling metrics per terminal, and publishes
what it finds on its EventBus:

- stream:event / stream:output for every accepted event and every chunk
- tool:start / tool:end (via the ToolCallCorrelator)
- thinking:start / thinking:end, error:detected, warning:detected,
  prompt:ready, cost:update, tokens:update
- agent:spawn / agent:complete / agent:activity, consumed by AgentBridge

Detection is best-effort. analyze() never raises; unmatched output simply
produces no events.
"""

import re
import time
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set

from . import events as channels
from .config import MAX_BUFFER_SIZE
from .events import EventBus
from .models import AGENT_EVENT_TYPES, StreamEvent, StreamEventType, StreamMetrics, ToolCallRecord
from .patterns import STREAM_PATTERNS, PatternDefinition, is_tool_name, strip_ansi
from .tool_calls import ToolCallCorrelator

logger = logging.getLogger(__name__)


class StreamAnalyzer:
    """Pattern-based analyzer for agent CLI terminal output."""

    def __init__(
        self,
        events: Optional[EventBus] = None,
        correlator: Optional[ToolCallCorrelator] = None,
        patterns: Optional[Iterable[PatternDefinition]] = None,
        max_buffer_size: int = MAX_BUFFER_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.events = events or EventBus("stream-analyzer")
        self.correlator = correlator or ToolCallCorrelator(events=self.events)
        self.max_buffer_size = max_buffer_size
        self._clock = clock
        self._patterns: List[PatternDefinition] = list(STREAM_PATTERNS if patterns is None else patterns)
        self._metrics: Dict[int, StreamMetrics] = {}
        self._buffers: Dict[int, str] = {}
        self._in_thinking: Set[int] = set()
        self._lock = threading.RLock()

        # One handler per event type
        self._handlers: Dict[StreamEventType, Callable[[StreamEvent, Optional[str]], None]] = {
            StreamEventType.AGENT_SPAWN: self._on_agent_spawn,
            StreamEventType.AGENT_COMPLETE: self._on_agent_complete,
            StreamEventType.AGENT_ACTIVITY: self._on_agent_activity,
            StreamEventType.TOOL_START: self._on_tool_start,
            StreamEventType.TOOL_END: self._on_tool_end,
            StreamEventType.THINKING_START: self._on_thinking_start,
            StreamEventType.THINKING_END: self._on_thinking_end,
            StreamEventType.ERROR: self._on_error,
            StreamEventType.WARNING: self._on_warning,
            StreamEventType.PROMPT_READY: self._on_prompt_ready,
            StreamEventType.PROCESSING: self._on_passive,
            StreamEventType.CODE_BLOCK: self._on_passive,
            StreamEventType.FILE_REFERENCE: self._on_passive,
            StreamEventType.COST_UPDATE: self._on_cost_update,
            StreamEventType.TOKEN_USAGE: self._on_token_usage,
        }
        missing = set(StreamEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No stream handler for: {sorted(m.value for m in missing)}")

    # ========================================================================
    # STREAM ANALYSIS
    # ========================================================================

    def analyze(self, terminal_id: int, data, session_id: Optional[str] = None) -> List[StreamEvent]:
        """
        Analyze a chunk of terminal output and publish the events found.

        Args:
            terminal_id: Terminal the chunk came from
            data: Raw output (str, or bytes decoded as UTF-8)
            session_id: Session bound to the terminal, if known

        Returns:
            Accepted events in pattern-table order
        """
        if isinstance(data, bytes):
            data = data.decode('utf-8', errors='replace')
        data = data or ''
        timestamp = self._clock()
        found: List[StreamEvent] = []

        with self._lock:
            self._append_to_buffer(terminal_id, data)
            self._update_metrics(terminal_id, session_id, data, timestamp)
            patterns = list(self._patterns)

        clean_data = strip_ansi(data)

        for pattern_def in patterns:
            text = clean_data if pattern_def.event_type in AGENT_EVENT_TYPES else data
            try:
                event_data = pattern_def.apply(text)
            except Exception as e:
                logger.debug(f"Pattern {pattern_def.name} failed on terminal {terminal_id}: {e}")
                continue

            if not isinstance(event_data, dict) or event_data.get('skip'):
                continue

            event = StreamEvent(
                type=StreamEventType(pattern_def.event_type),
                terminal_id=terminal_id,
                timestamp=timestamp,
                data=event_data,
            )
            found.append(event)
            self._handlers[event.type](event, session_id)
            self.events.emit(channels.STREAM_EVENT, event)

        self.events.emit(channels.STREAM_OUTPUT, {
            'terminal_id': terminal_id,
            'data': data,
            'timestamp': timestamp,
        })
        return found

    # ========================================================================
    # EVENT HANDLERS
    # ========================================================================

    def _on_tool_start(self, event: StreamEvent, session_id: Optional[str]) -> None:
        tool_name = event.data.get('tool_name')
        if not tool_name:
            logger.debug(f"Tool start without a tool name on terminal {event.terminal_id}, not correlated")
            return
        with self._lock:
            metrics = self._metrics.get(event.terminal_id)
            if metrics:
                metrics.tool_calls += 1
        self.correlator.open_call(
            event.terminal_id,
            tool_name,
            event.timestamp,
            tool_input=event.data.get('input', ''),
        )

    def _on_tool_end(self, event: StreamEvent, session_id: Optional[str]) -> None:
        tool_name = event.data.get('tool_name')
        if not tool_name:
            logger.debug(f"Tool end without a tool name on terminal {event.terminal_id}, not correlated")
            return
        self.correlator.close_call(
            event.terminal_id,
            tool_name,
            event.timestamp,
            success=event.data.get('success', True),
            result=event.data.get('error'),
            session_id=session_id,
        )

    def _on_thinking_start(self, event: StreamEvent, session_id: Optional[str]) -> None:
        with self._lock:
            self._in_thinking.add(event.terminal_id)
            metrics = self._metrics.get(event.terminal_id)
            if metrics:
                metrics.thinking_blocks += 1
        self.events.emit(channels.THINKING_START, {'terminal_id': event.terminal_id})

    def _on_thinking_end(self, event: StreamEvent, session_id: Optional[str]) -> None:
        with self._lock:
            self._in_thinking.discard(event.terminal_id)
        self.events.emit(channels.THINKING_END, {'terminal_id': event.terminal_id})

    def _on_error(self, event: StreamEvent, session_id: Optional[str]) -> None:
        with self._lock:
            metrics = self._metrics.get(event.terminal_id)
            if metrics:
                metrics.errors += 1
        self.events.emit(channels.ERROR_DETECTED, {
            'terminal_id': event.terminal_id,
            'message': event.data.get('message'),
        })

    def _on_warning(self, event: StreamEvent, session_id: Optional[str]) -> None:
        with self._lock:
            metrics = self._metrics.get(event.terminal_id)
            if metrics:
                metrics.warnings += 1
        self.events.emit(channels.WARNING_DETECTED, {
            'terminal_id': event.terminal_id,
            'message': event.data.get('message'),
        })

    def _on_prompt_ready(self, event: StreamEvent, session_id: Optional[str]) -> None:
        self.events.emit(channels.PROMPT_READY, {'terminal_id': event.terminal_id})

    def _on_cost_update(self, event: StreamEvent, session_id: Optional[str]) -> None:
        self.events.emit(channels.COST_UPDATE, {
            'terminal_id': event.terminal_id,
            'cost_usd': event.data.get('cost_usd'),
        })

    def _on_token_usage(self, event: StreamEvent, session_id: Optional[str]) -> None:
        tokens = event.data.get('tokens', 0)
        with self._lock:
            metrics = self._metrics.get(event.terminal_id)
            if metrics:
                metrics.estimated_tokens = tokens
        self.events.emit(channels.TOKENS_UPDATE, {
            'terminal_id': event.terminal_id,
            'tokens': tokens,
        })

    def _on_agent_spawn(self, event: StreamEvent, session_id: Optional[str]) -> None:
        agent_name = event.data.get('agent_name')
        if not agent_name or is_tool_name(agent_name):
            logger.debug(f"Skipping agent spawn - tool name detected: {agent_name}")
            return

        logger.info(
            f"Agent detected: {agent_name} (terminal {event.terminal_id}, "
            f"source {event.data.get('source')})"
        )
        self.events.emit(channels.AGENT_SPAWN, {
            'terminal_id': event.terminal_id,
            'agent_name': agent_name,
            'description': event.data.get('description'),
            'timestamp': event.timestamp,
            'is_real_agent': bool(event.data.get('is_real_agent', False)),
            'session_id': session_id,
        })

    def _on_agent_complete(self, event: StreamEvent, session_id: Optional[str]) -> None:
        agent_id = event.data.get('agent_id')
        agent_name = event.data.get('agent_name')
        if agent_name and is_tool_name(agent_name):
            logger.debug(f"Skipping agent complete - tool name: {agent_name}")
            return

        reason = event.data.get('reason')
        logger.info(f"Agent completed: {agent_id or agent_name} (reason: {reason})")
        self.events.emit(channels.AGENT_COMPLETE, {
            'terminal_id': event.terminal_id,
            'agent_id': agent_id or '',
            'agent_name': agent_name,
            'reason': reason,
            'timestamp': event.timestamp,
        })

    def _on_agent_activity(self, event: StreamEvent, session_id: Optional[str]) -> None:
        self.events.emit(channels.AGENT_ACTIVITY, {
            'terminal_id': event.terminal_id,
            'agent_name': event.data.get('agent_name'),
            'activity': event.data.get('activity'),
            'timestamp': event.timestamp,
        })

    def _on_passive(self, event: StreamEvent, session_id: Optional[str]) -> None:
        # Only published on stream:event
        pass

    # ========================================================================
    # BUFFER MANAGEMENT
    # ========================================================================

    def _append_to_buffer(self, terminal_id: int, data: str) -> None:
        buffer = self._buffers.get(terminal_id, '') + data
        if len(buffer) > self.max_buffer_size:
            buffer = buffer[-self.max_buffer_size:]
        self._buffers[terminal_id] = buffer

    def get_buffer(self, terminal_id: int) -> str:
        with self._lock:
            return self._buffers.get(terminal_id, '')

    def clear_buffer(self, terminal_id: int) -> None:
        with self._lock:
            self._buffers.pop(terminal_id, None)

    def search_buffer(self, terminal_id: int, pattern) -> Optional[re.Match]:
        """Search a terminal's buffer with a regex (string or compiled)."""
        buffer = self.get_buffer(terminal_id)
        if not buffer:
            return None
        return re.search(pattern, buffer)

    # ========================================================================
    # METRICS
    # ========================================================================

    def _update_metrics(self, terminal_id: int, session_id: Optional[str], data: str, timestamp: float) -> None:
        metrics = self._metrics.get(terminal_id)
        if metrics is None:
            metrics = StreamMetrics(
                terminal_id=terminal_id,
                session_id=session_id,
                start_time=timestamp,
                last_activity_time=timestamp,
            )
            self._metrics[terminal_id] = metrics

        metrics.last_activity_time = timestamp
        metrics.output_bytes += len(data.encode('utf-8', errors='replace'))
        if session_id:
            metrics.session_id = session_id

    def get_metrics(self, terminal_id: int) -> Optional[StreamMetrics]:
        with self._lock:
            return self._metrics.get(terminal_id)

    def get_all_metrics(self) -> List[StreamMetrics]:
        with self._lock:
            return list(self._metrics.values())

    def clear_metrics(self, terminal_id: int) -> None:
        with self._lock:
            self._metrics.pop(terminal_id, None)

    def get_tracked_terminal_count(self) -> int:
        with self._lock:
            return len(self._metrics)

    # ========================================================================
    # STATE QUERIES
    # ========================================================================

    def is_thinking(self, terminal_id: int) -> bool:
        with self._lock:
            return terminal_id in self._in_thinking

    def get_active_tool_calls(self, terminal_id: int) -> List[ToolCallRecord]:
        return self.correlator.get_active_calls(terminal_id)

    def has_active_tool_calls(self, terminal_id: int) -> bool:
        return self.correlator.has_active_calls(terminal_id)

    # ========================================================================
    # CUSTOM PATTERNS
    # ========================================================================

    def add_custom_pattern(self, pattern: PatternDefinition) -> None:
        with self._lock:
            self._patterns.append(pattern)
        logger.debug(f"Added custom pattern: {pattern.name}")

    def remove_custom_pattern(self, name: str) -> bool:
        with self._lock:
            for index, pattern in enumerate(self._patterns):
                if pattern.name == name:
                    del self._patterns[index]
                    logger.debug(f"Removed custom pattern: {name}")
                    return True
        return False

    def pattern_names(self) -> List[str]:
        with self._lock:
            return [pattern.name for pattern in self._patterns]

    # ========================================================================
    # CLEANUP
    # ========================================================================

    def clear_terminal(self, terminal_id: int) -> None:
        """Forget everything about a terminal: metrics, buffer, thinking state, open calls."""
        with self._lock:
            self._metrics.pop(terminal_id, None)
            self._buffers.pop(terminal_id, None)
            self._in_thinking.discard(terminal_id)
        self.correlator.clear_terminal(terminal_id)

    def cleanup_stale_entries(self, active_terminal_ids: Iterable[int]) -> int:
        """
        Remove state for terminals that no longer exist.

        Args:
            active_terminal_ids: Terminals the host still has open

        Returns:
            Number of terminals whose metrics were dropped
        """
        active = set(active_terminal_ids)
        cleaned = 0

        with self._lock:
            for terminal_id in list(self._metrics):
                if terminal_id not in active:
                    self.clear_terminal(terminal_id)
                    cleaned += 1
                    logger.debug(f"Cleaned up stale entry for terminal {terminal_id}")

            for terminal_id in list(self._buffers):
                if terminal_id not in active:
                    del self._buffers[terminal_id]

            self._in_thinking &= active

        for terminal_id in self.correlator.terminal_ids():
            if terminal_id not in active:
                self.correlator.clear_terminal(terminal_id)

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale terminal entries")
        return cleaned

    def shutdown(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._buffers.clear()
            self._in_thinking.clear()
        self.correlator.clear()
        self.events.remove_all_listeners()
        logger.info("Stream analyzer shut down")
