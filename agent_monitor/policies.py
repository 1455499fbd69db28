"""
Background Policy Engine.

Periodically re-evaluates registry state and reclaims agents that are idle,
stale or were registered by mistake. Each policy runs in its own daemon
thread on its own period; all threads share one stop event.

| policy                 | default period        | rule                                  |
|------------------------|-----------------------|---------------------------------------|
| idle detection         | 10s                   | active, inactive > 30s -> idle        |
| stale termination      | 60s                   | idle, inactive > 30min -> terminated  |
| garbage cleanup        | 5min (+ on start)     | tool-named, or live without session   |
|                        |                       | and spawned > 1h ago -> removed       |
| stale record sweep     | 1h (+ on start)       | inactive > 24h, any status -> removed |
| session map validation | 60s                   | mapping to missing/finished agent     |
| terminal cleanup       | 30s (if configured)   | analyzer drops vanished terminals     |

Every pass can also be run synchronously, which is how tests drive it.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import (
    ACTIVITY_CHECK_INTERVAL,
    CLEANUP_INTERVAL,
    GARBAGE_CLEANUP_INTERVAL,
    IDLE_THRESHOLD_SECONDS,
    ORPHAN_AGENT_MAX_AGE_SECONDS,
    SESSION_MAP_VALIDATION_INTERVAL,
    STALE_AGENT_THRESHOLD_SECONDS,
    STALE_CHECK_INTERVAL,
    STALE_RECORD_MAX_AGE_SECONDS,
    TERMINAL_CLEANUP_INTERVAL,
)
from .models import AgentStatus
from .registry import AgentRegistry

logger = logging.getLogger(__name__)


class PolicyEngine:
    """Runs the registry's background policies on daemon threads."""

    def __init__(
        self,
        registry: AgentRegistry,
        idle_threshold: float = IDLE_THRESHOLD_SECONDS,
        stale_threshold: float = STALE_AGENT_THRESHOLD_SECONDS,
        record_max_age: float = STALE_RECORD_MAX_AGE_SECONDS,
        orphan_max_age: float = ORPHAN_AGENT_MAX_AGE_SECONDS,
        activity_interval: float = ACTIVITY_CHECK_INTERVAL,
        stale_interval: float = STALE_CHECK_INTERVAL,
        garbage_interval: float = GARBAGE_CLEANUP_INTERVAL,
        cleanup_interval: float = CLEANUP_INTERVAL,
        session_validation_interval: float = SESSION_MAP_VALIDATION_INTERVAL,
        terminal_cleanup: Optional[Callable[[], int]] = None,
        terminal_cleanup_interval: float = TERMINAL_CLEANUP_INTERVAL,
    ):
        """
        Initialize the policy engine.

        Args:
            registry: Registry the policies act on
            idle_threshold: Seconds without activity before an active agent goes idle
            stale_threshold: Seconds without activity before an idle agent is terminated
            record_max_age: Seconds without activity before any record is removed
            orphan_max_age: Seconds after spawn before a live agent with no
                session is treated as garbage
            terminal_cleanup: Optional callable dropping analyzer state for
                terminals that no longer exist
        """
        self.registry = registry
        self.idle_threshold = idle_threshold
        self.stale_threshold = stale_threshold
        self.record_max_age = record_max_age
        self.orphan_max_age = orphan_max_age
        self.terminal_cleanup = terminal_cleanup

        self.intervals: Dict[str, float] = {
            'idle_check': activity_interval,
            'stale_check': stale_interval,
            'garbage_cleanup': garbage_interval,
            'stale_sweep': cleanup_interval,
            'session_map_validation': session_validation_interval,
        }
        if terminal_cleanup is not None:
            self.intervals['terminal_cleanup'] = terminal_cleanup_interval

        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []
        self.is_running = False
        self.last_run: Dict[str, datetime] = {}

    # ========================================================================
    # POLICY PASSES
    # ========================================================================

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self.registry.now()

    def run_idle_check(self, now: Optional[datetime] = None) -> List[str]:
        """Move active agents with no activity for longer than idle_threshold to idle."""
        now = self._now(now)
        cutoff = now - timedelta(seconds=self.idle_threshold)
        marked = []
        with self.registry.batch():
            for agent in self.registry.get_agents_by_status(AgentStatus.ACTIVE):
                if agent.last_activity < cutoff:
                    self.registry.mark_idle(agent.id)
                    marked.append(agent.id)
        if marked:
            logger.info(f"Idle check: {len(marked)} agents marked idle")
        return marked

    def run_stale_check(self, now: Optional[datetime] = None) -> List[str]:
        """Terminate idle agents with no activity for longer than stale_threshold."""
        now = self._now(now)
        cutoff = now - timedelta(seconds=self.stale_threshold)
        terminated = []
        with self.registry.batch():
            for agent in self.registry.get_agents_by_status(AgentStatus.IDLE):
                if agent.last_activity < cutoff:
                    idle_minutes = round((now - agent.last_activity).total_seconds() / 60)
                    logger.info(
                        f"Marking stale agent for termination: {agent.name} ({agent.id}), "
                        f"idle for {idle_minutes} minutes"
                    )
                    self.registry.terminate_agent(agent.id)
                    terminated.append(agent.id)
        if terminated:
            logger.info(f"Auto-terminated {len(terminated)} stale agents")
        return terminated

    def run_garbage_cleanup(self, now: Optional[datetime] = None) -> int:
        with self.registry.batch():
            return self.registry.cleanup_garbage_agents(self.orphan_max_age, now=self._now(now))

    def run_stale_sweep(self, now: Optional[datetime] = None) -> int:
        with self.registry.batch():
            return self.registry.cleanup_stale_records(self.record_max_age, now=self._now(now))

    def validate_session_map(self) -> int:
        with self.registry.batch():
            return self.registry.validate_session_map()

    def run_terminal_cleanup(self) -> int:
        if self.terminal_cleanup is None:
            return 0
        return self.terminal_cleanup()

    def _passes(self) -> Dict[str, Callable[[], Any]]:
        passes = {
            'idle_check': self.run_idle_check,
            'stale_check': self.run_stale_check,
            'garbage_cleanup': self.run_garbage_cleanup,
            'stale_sweep': self.run_stale_sweep,
            'session_map_validation': self.validate_session_map,
        }
        if self.terminal_cleanup is not None:
            passes['terminal_cleanup'] = self.run_terminal_cleanup
        return passes

    def _run_pass(self, name: str, func: Callable[[], Any]) -> Any:
        try:
            result = func()
            self.last_run[name] = datetime.now()
            return result
        except Exception as e:
            logger.error(f"Error during {name}: {e}", exc_info=True)
            return None

    # ========================================================================
    # DAEMON CONTROL
    # ========================================================================

    def start(self):
        """Run the startup passes, then start one background thread per policy."""
        if self.is_running:
            logger.warning("PolicyEngine already running")
            return

        # Reclaim leftovers from a previous run before scheduling
        self._run_pass('garbage_cleanup', self.run_garbage_cleanup)
        self._run_pass('stale_sweep', self.run_stale_sweep)
        self._run_pass('stale_check', self.run_stale_check)

        self.stop_event.clear()
        self.threads = []
        passes = self._passes()
        for name, interval in self.intervals.items():
            thread = threading.Thread(
                target=self._task_loop,
                args=(name, interval, passes[name]),
                name=f"policy-{name}",
                daemon=True,
            )
            thread.start()
            self.threads.append(thread)

        self.is_running = True
        logger.info(f"PolicyEngine started with {len(self.threads)} tasks")

    def stop(self, timeout: float = 5):
        """
        Stop all policy threads.

        Args:
            timeout: Seconds to wait for each thread to stop
        """
        if not self.is_running:
            return

        logger.info("Stopping PolicyEngine...")
        self.stop_event.set()

        for thread in self.threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Policy thread {thread.name} did not stop gracefully")

        self.threads = []
        self.is_running = False
        logger.info("PolicyEngine stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "intervals": dict(self.intervals),
            "idle_threshold": self.idle_threshold,
            "stale_threshold": self.stale_threshold,
            "record_max_age": self.record_max_age,
            "last_run": {name: ts.isoformat() for name, ts in self.last_run.items()},
        }

    def trigger_scan(self) -> Dict[str, Any]:
        """Run every policy pass once, immediately, on the caller's thread."""
        logger.info("Manual policy scan triggered")
        return {name: self._run_pass(name, func) for name, func in self._passes().items()}

    def _task_loop(self, name: str, interval: float, func: Callable[[], Any]):
        logger.debug(f"Policy task {name} started (every {interval}s)")
        while not self.stop_event.wait(interval):
            self._run_pass(name, func)
        logger.debug(f"Policy task {name} stopped")
