"""
In-process publish/subscribe channels.

Every component owns its own EventBus (analyzer, registry, hook source,
terminal host) so channel names like "agent:activity" can mean different
things on different buses without colliding.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


# ============================================================================
# CHANNEL NAMES
# ============================================================================

# Stream analyzer
STREAM_EVENT = 'stream:event'
STREAM_OUTPUT = 'stream:output'
TOOL_START = 'tool:start'
TOOL_END = 'tool:end'
THINKING_START = 'thinking:start'
THINKING_END = 'thinking:end'
ERROR_DETECTED = 'error:detected'
WARNING_DETECTED = 'warning:detected'
PROMPT_READY = 'prompt:ready'
COST_UPDATE = 'cost:update'
TOKENS_UPDATE = 'tokens:update'
AGENT_SPAWN = 'agent:spawn'
AGENT_COMPLETE = 'agent:complete'
AGENT_ACTIVITY = 'agent:activity'

# Bridge
AGENT_DETECTED = 'agent:detected'

# Registry
AGENT_SPAWNED = 'agent:spawned'
AGENT_READY = 'agent:ready'
AGENT_ACTIVE = 'agent:active'
AGENT_IDLE = 'agent:idle'
AGENT_COMPLETED = 'agent:completed'
AGENT_ERROR = 'agent:error'
AGENT_TERMINATED = 'agent:terminated'
AGENT_RECORD_ACTIVITY = 'agent:activity'
AGENT_BUDGET_ALLOCATED = 'agent:budget-allocated'
AGENT_BUDGET_EXCEEDED = 'agent:budget-exceeded'
AGENT_REMOVED = 'agent:removed'

REGISTRY_CHANNELS = (
    AGENT_SPAWNED,
    AGENT_READY,
    AGENT_ACTIVE,
    AGENT_IDLE,
    AGENT_COMPLETED,
    AGENT_ERROR,
    AGENT_TERMINATED,
    AGENT_RECORD_ACTIVITY,
    AGENT_BUDGET_ALLOCATED,
    AGENT_BUDGET_EXCEEDED,
    AGENT_REMOVED,
)

# Hook/session event source
SESSION_START = 'session:start'
SESSION_END = 'session:end'
HOOK_AGENT_START = 'agent:start'
HOOK_AGENT_STOP = 'agent:stop'

# Terminal host
TERMINAL_EXITED = 'terminal-exited'


class EventBus:
    """Synchronous, thread-safe event emitter."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, channel: str, listener: Listener) -> Listener:
        """
        Subscribe a listener to a channel.

        Returns the listener so it can be kept for a later off().
        """
        with self._lock:
            self._listeners.setdefault(channel, []).append(listener)
        return listener

    def off(self, channel: str, listener: Listener) -> bool:
        with self._lock:
            listeners = self._listeners.get(channel)
            if not listeners or listener not in listeners:
                return False
            listeners.remove(listener)
            if not listeners:
                del self._listeners[channel]
            return True

    def emit(self, channel: str, *args: Any) -> int:
        """
        Deliver a message to every listener of a channel.

        Listeners run on the caller's thread. A failing listener is logged and
        does not stop delivery to the others.

        Returns:
            Number of listeners invoked.
        """
        with self._lock:
            listeners = list(self._listeners.get(channel, ()))

        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"[{self.name}] listener for {channel} failed: {e}", exc_info=True)
        return len(listeners)

    def listener_count(self, channel: str) -> int:
        with self._lock:
            return len(self._listeners.get(channel, ()))

    def remove_all_listeners(self, channel: str = None) -> None:
        with self._lock:
            if channel is None:
                self._listeners.clear()
            else:
                self._listeners.pop(channel, None)
