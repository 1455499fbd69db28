"""
AgentMonitor service: wires the analyzer, correlator, bridge, registry and
policy engine together and owns start-up and shutdown.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from . import state_db
from .bridge import AgentBridge
from .config import DB_PATH, DEDUP_WINDOW_SECONDS, MAX_BUFFER_SIZE
from .events import EventBus, TERMINAL_EXITED
from .models import StreamEvent
from .policies import PolicyEngine
from .registry import AgentRegistry
from .stream_analyzer import StreamAnalyzer
from .tool_calls import ToolCallCorrelator

logger = logging.getLogger(__name__)


class AgentMonitor:
    """Composition root for agent detection and lifecycle tracking."""

    def __init__(
        self,
        db_path: str = DB_PATH,
        terminal_bus: Optional[EventBus] = None,
        hook_bus: Optional[EventBus] = None,
        active_terminals: Optional[Callable[[], Iterable[int]]] = None,
        dedup_window: float = DEDUP_WINDOW_SECONDS,
        max_buffer_size: int = MAX_BUFFER_SIZE,
        clock: Callable[[], datetime] = datetime.now,
        policy_options: Optional[dict] = None,
    ):
        """
        Build every component.

        Args:
            db_path: SQLite file backing the registry
            terminal_bus: Bus publishing terminal-exited (optional)
            hook_bus: Bus publishing session/agent hook notifications (optional)
            active_terminals: Callable listing open terminal ids; enables the
                terminal entry cleanup policy
            clock: Registry clock, injectable for tests
            policy_options: Extra keyword arguments for PolicyEngine
        """
        self.db_path = state_db.ensure_db(db_path)
        self.terminal_bus = terminal_bus

        self.registry = AgentRegistry(db_path=self.db_path, clock=clock)
        self.analyzer_events = EventBus("stream-analyzer")
        self.correlator = ToolCallCorrelator(events=self.analyzer_events, record_usage=self._record_tool_usage)
        self.analyzer = StreamAnalyzer(
            events=self.analyzer_events,
            correlator=self.correlator,
            max_buffer_size=max_buffer_size,
        )
        self.bridge = AgentBridge(self.registry, dedup_window=dedup_window)

        terminal_cleanup = None
        if active_terminals is not None:
            terminal_cleanup = lambda: self.analyzer.cleanup_stale_entries(active_terminals())  # noqa: E731
        self.policies = PolicyEngine(self.registry, terminal_cleanup=terminal_cleanup, **(policy_options or {}))

        self.bridge.wire(self.analyzer_events, terminal_bus)
        if terminal_bus is not None:
            terminal_bus.on(TERMINAL_EXITED, self._on_terminal_exited)
        if hook_bus is not None:
            self.attach_hook_source(hook_bus)

        self._lock = threading.Lock()
        self._started = False
        self._shut_down = False

    def _record_tool_usage(self, usage: dict) -> None:
        state_db.record_detailed_tool_usage(db_path=self.db_path, **usage)

    def _on_terminal_exited(self, data) -> None:
        # The bridge handles the agents; only the analyzer state is dropped here
        terminal_id = data.get('terminal_id') if isinstance(data, dict) else data
        self.analyzer.clear_terminal(terminal_id)

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        with self._lock:
            if self._started or self._shut_down:
                return
            self._started = True
        self.policies.start()
        logger.info(f"AgentMonitor started (db: {self.db_path})")

    def shutdown(self) -> None:
        """
        Stop everything and terminate live agents. Safe to call repeatedly.

        Order: stop policy threads, unwire listeners, clear detection state,
        terminate every live agent, clear the session map.
        """
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True

        logger.info("Shutting down AgentMonitor")
        self.policies.stop()

        self.bridge.unwire()
        self.registry.unwire_hook_events()
        if self.terminal_bus is not None:
            self.terminal_bus.off(TERMINAL_EXITED, self._on_terminal_exited)

        self.bridge.clear()
        self.analyzer.shutdown()

        for agent in self.registry.get_active_agents():
            self.registry.terminate_agent(agent.id)

        self.registry.sessions.clear()
        logger.info("AgentMonitor shut down")

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    # ========================================================================
    # TERMINAL HOST INTERFACE
    # ========================================================================

    def feed_output(self, terminal_id: int, chunk, session_id: Optional[str] = None) -> List[StreamEvent]:
        """Analyze one chunk of terminal output. No-op after shutdown."""
        if self._shut_down:
            return []
        return self.analyzer.analyze(terminal_id, chunk, session_id=session_id)

    def terminal_exited(self, terminal_id: int) -> int:
        """Terminate the terminal's live agents and drop its analyzer state."""
        terminated = self.bridge.handle_terminal_exited(terminal_id)
        self.analyzer.clear_terminal(terminal_id)
        return terminated

    def attach_hook_source(self, hook_bus: EventBus) -> None:
        self.registry.wire_hook_events(hook_bus)


_monitor_instance = None
_monitor_lock = threading.Lock()


def get_monitor(db_path: str = DB_PATH) -> AgentMonitor:
    """
    Get or create the process-wide AgentMonitor (started on creation).

    Args:
        db_path: SQLite file used when the monitor is first created
    """
    global _monitor_instance

    with _monitor_lock:
        if _monitor_instance is None or _monitor_instance.is_shut_down:
            _monitor_instance = AgentMonitor(db_path=db_path)
            _monitor_instance.start()
        return _monitor_instance


def shutdown_monitor() -> None:
    """Shut down the process-wide monitor if one exists."""
    global _monitor_instance

    with _monitor_lock:
        if _monitor_instance is not None:
            _monitor_instance.shutdown()
            _monitor_instance = None
