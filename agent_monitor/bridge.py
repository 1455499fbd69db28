"""
Dedup/Bridge layer between the stream analyzer and the agent registry.

Turns noisy agent:spawn / agent:complete / agent:activity detections into
registry mutations:

- Spawns of the same (terminal, name) within the dedup window are dropped.
- Accepted spawns get a display name with a per-name instance number
  ("reviewer", "reviewer #2", ...), are registered and marked active.
- Terminal exit terminates every live agent the terminal spawned.
"""

import os
import logging
import threading
from typing import Any, Dict, List, Optional

from . import events as channels
from .config import DEDUP_PURGE_THRESHOLD, DEDUP_WINDOW_SECONDS
from .events import EventBus
from .models import AgentRecord, AgentSpawnOptions
from .registry import AgentRegistry

logger = logging.getLogger(__name__)


class AgentBridge:
    """Routes analyzer detections into the registry."""

    def __init__(
        self,
        registry: AgentRegistry,
        events: Optional[EventBus] = None,
        dedup_window: float = DEDUP_WINDOW_SECONDS,
        purge_threshold: int = DEDUP_PURGE_THRESHOLD,
        cwd: Optional[str] = None,
    ):
        self.registry = registry
        self.events = events or EventBus("agent-bridge")
        self.dedup_window = dedup_window
        self.purge_threshold = purge_threshold
        self.cwd = cwd or os.getcwd()

        self._recent: Dict[tuple, float] = {}  # (terminal_id, agent_name) -> last seen
        self._instance_counts: Dict[str, int] = {}
        # terminal_id -> agent ids in spawn order (dict used as an ordered set)
        self._terminal_agents: Dict[int, Dict[str, None]] = {}
        self._lock = threading.Lock()

        self._wired: List[tuple] = []

    # ========================================================================
    # WIRING
    # ========================================================================

    def wire(self, analyzer_bus: EventBus, terminal_bus: Optional[EventBus] = None) -> None:
        """Subscribe to analyzer detections and (optionally) terminal exits."""
        self.unwire()
        subscriptions = [
            (analyzer_bus, channels.AGENT_SPAWN, self.handle_agent_spawn),
            (analyzer_bus, channels.AGENT_COMPLETE, self.handle_agent_complete),
            (analyzer_bus, channels.AGENT_ACTIVITY, self.handle_agent_activity),
        ]
        if terminal_bus is not None:
            subscriptions.append((terminal_bus, channels.TERMINAL_EXITED, self._on_terminal_exited))

        for bus, channel, listener in subscriptions:
            bus.on(channel, listener)
            self._wired.append((bus, channel, listener))
        logger.info("Stream analyzer wired to agent registry")

    def unwire(self) -> None:
        for bus, channel, listener in self._wired:
            bus.off(channel, listener)
        self._wired = []

    # ========================================================================
    # HANDLERS
    # ========================================================================

    def handle_agent_spawn(self, data: Dict[str, Any]) -> Optional[AgentRecord]:
        """
        Register a detected agent unless it is a duplicate.

        Returns:
            The registered agent, or None if the detection was dropped
        """
        terminal_id = data['terminal_id']
        agent_name = data['agent_name']
        timestamp = data['timestamp']
        description = data.get('description')

        with self._lock:
            key = (terminal_id, agent_name)
            last_seen = self._recent.get(key)
            if last_seen is not None and (timestamp - last_seen) < self.dedup_window:
                logger.debug(
                    f"Skipping duplicate agent detection: {agent_name} "
                    f"(detected {timestamp - last_seen:.3f}s ago)"
                )
                return None
            self._recent[key] = timestamp

            if len(self._recent) > self.purge_threshold:
                cutoff = timestamp - self.dedup_window * 2
                for stale_key in [k for k, seen in self._recent.items() if seen < cutoff]:
                    del self._recent[stale_key]

            instance = self._instance_counts.get(agent_name, 0) + 1
            self._instance_counts[agent_name] = instance

        display_name = f"{agent_name} #{instance}" if instance > 1 else agent_name

        try:
            agent = self.registry.spawn(AgentSpawnOptions(
                name=display_name,
                cwd=self.cwd,
                initial_prompt=description,
            ))
        except Exception:
            # Release the reservation so the next detection is not suppressed
            # and the instance number is reused.
            with self._lock:
                if self._recent.get(key) == timestamp:
                    if last_seen is None:
                        del self._recent[key]
                    else:
                        self._recent[key] = last_seen
                if self._instance_counts.get(agent_name) == instance:
                    self._instance_counts[agent_name] = instance - 1
            raise

        with self._lock:
            self._terminal_agents.setdefault(terminal_id, {})[agent.id] = None

        self.registry.mark_active(agent.id)
        logger.info(f"Registered detected agent: {display_name} ({agent.id})")

        self.events.emit(channels.AGENT_DETECTED, {
            'id': agent.id,
            'name': display_name,
            'description': description,
            'terminal_id': terminal_id,
        })
        return agent

    def handle_terminal_exited(self, terminal_id: int) -> int:
        """
        Terminate every live agent spawned from a terminal and forget the terminal.

        Returns:
            Number of agents terminated
        """
        with self._lock:
            agent_ids = list(self._terminal_agents.pop(terminal_id, {}))

        terminated = 0
        for agent_id in agent_ids:
            agent = self.registry.get_agent(agent_id)
            if agent and agent.is_live:
                logger.info(f"Terminating agent {agent_id} due to terminal {terminal_id} exit")
                self.registry.terminate_agent(agent_id)
                terminated += 1
        return terminated

    def _on_terminal_exited(self, data) -> None:
        terminal_id = data.get('terminal_id') if isinstance(data, dict) else data
        self.handle_terminal_exited(terminal_id)

    @staticmethod
    def _matches(agent: AgentRecord, agent_id: str, agent_name: Optional[str]) -> bool:
        if agent_id and (agent.id.startswith(agent_id) or agent_id.startswith(agent.id[:7])):
            return True
        if agent_name:
            name = agent.name.lower()
            wanted = agent_name.lower()
            return name == wanted or name.startswith(wanted + ' #')
        return False

    def handle_agent_complete(self, data: Dict[str, Any]) -> Optional[str]:
        """
        Complete the first live agent of the terminal matching the detection.

        Returns:
            The completed agent id, or None if nothing matched
        """
        terminal_id = data['terminal_id']
        agent_id = data.get('agent_id') or ''
        agent_name = data.get('agent_name')
        reason = data.get('reason')

        for candidate_id in self.get_terminal_agents(terminal_id):
            agent = self.registry.get_agent(candidate_id)
            if not agent or not agent.is_live:
                continue
            if self._matches(agent, agent_id, agent_name):
                self.registry.complete(candidate_id, 1 if reason == 'error' else 0)
                logger.info(f"Agent completed: {agent.name} ({candidate_id}) reason={reason}")
                return candidate_id

        logger.debug(f"No live agent on terminal {terminal_id} matched completion of {agent_id or agent_name}")
        return None

    def handle_agent_activity(self, data: Dict[str, Any]) -> None:
        for agent_id in self.get_terminal_agents(data['terminal_id']):
            agent = self.registry.get_agent(agent_id)
            if agent and agent.is_live:
                self.registry.record_activity(agent_id)

    # ========================================================================
    # STATE
    # ========================================================================

    def get_terminal_agents(self, terminal_id: int) -> List[str]:
        """Agent ids spawned from a terminal, in spawn order."""
        with self._lock:
            return list(self._terminal_agents.get(terminal_id, {}))

    def dedup_size(self) -> int:
        with self._lock:
            return len(self._recent)

    def clear(self) -> None:
        """Drop the dedup table and terminal map. Instance counters are kept."""
        with self._lock:
            self._recent.clear()
            self._terminal_agents.clear()
