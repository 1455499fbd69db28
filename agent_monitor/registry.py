"""
Agent Lifecycle Registry.

Tracks every detected agent through the AgentStatus state machine, keeps the
parent/child hierarchy and budget bookkeeping, and publishes lifecycle events.

Storage model:
- An in-memory arena (agent_id -> AgentRecord) plus a parent -> children
  index answers every query. The arena is loaded from the state db once on
  construction.
- Every mutation is written through to the state db. Creation writes (spawn,
  budget allocation) raise on failure; the rest are logged.

Concurrency:
- One re-entrant lock guards the arena. Background policies hold it for a
  whole pass through batch().
- Events are emitted after the mutation, and listeners receive copies.
"""

import re
import uuid
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Set

from . import state_db
from . import events as channels
from .config import DB_PATH, ORPHAN_AGENT_MAX_AGE_SECONDS, STALE_RECORD_MAX_AGE_SECONDS
from .events import EventBus
from .models import (
    AgentRecord,
    AgentSpawnOptions,
    AgentStats,
    AgentStatus,
    AgentTreeNode,
    HierarchySummary,
    LIVE_STATUSES,
    is_valid_agent_transition,
)
from .patterns import is_tool_name
from .session_map import SessionAgentMap

logger = logging.getLogger(__name__)


class AgentRegistry:
    """In-memory agent registry with write-through SQLite persistence."""

    def __init__(
        self,
        db_path: str = DB_PATH,
        events: Optional[EventBus] = None,
        session_map: Optional[SessionAgentMap] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db_path = state_db.ensure_db(db_path)
        self.events = events or EventBus("agent-registry")
        self.sessions = session_map or SessionAgentMap()
        self._clock = clock
        self._agents: Dict[str, AgentRecord] = {}
        self._children: Dict[str, List[str]] = {}
        self._lock = threading.RLock()
        self._hook_bus: Optional[EventBus] = None
        self._hook_listeners: List[tuple] = []
        self._load()

    def _load(self) -> None:
        """Cold start: rebuild the arena from the state db."""
        records = state_db.list_agents(db_path=self.db_path)
        with self._lock:
            self._agents.clear()
            self._children.clear()
            for record in records:
                self._index(record)
        if records:
            logger.info(f"Loaded {len(records)} agents from {self.db_path}")

    def _index(self, record: AgentRecord) -> None:
        self._agents[record.id] = record
        if record.parent_id:
            self._children.setdefault(record.parent_id, []).append(record.id)

    def _unindex(self, agent_id: str) -> Optional[AgentRecord]:
        record = self._agents.pop(agent_id, None)
        if record and record.parent_id:
            siblings = self._children.get(record.parent_id)
            if siblings and agent_id in siblings:
                siblings.remove(agent_id)
                if not siblings:
                    del self._children[record.parent_id]
        return record

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def batch(self) -> Iterator['AgentRegistry']:
        """Hold the registry lock for a multi-step scan."""
        with self._lock:
            yield self

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def spawn(self, options: AgentSpawnOptions) -> AgentRecord:
        """
        Register a new agent in the spawning state.

        Depth and root session are derived from the parent at this point and
        never recomputed. An unknown parent_id yields a root-level agent that
        still remembers the parent id.

        Raises:
            sqlite3.Error: If the record cannot be persisted
        """
        now = self._clock()
        agent_id = str(uuid.uuid4())

        with self._lock:
            parent = self._agents.get(options.parent_id) if options.parent_id else None
            if parent:
                depth = parent.depth + 1
                root_session_id = parent.root_session_id or parent.id
            else:
                depth = 0
                root_session_id = options.session_path or agent_id

            record = AgentRecord(
                id=agent_id,
                name=options.name,
                cwd=options.cwd,
                status=AgentStatus.SPAWNING,
                parent_id=options.parent_id,
                template_id=options.template_id,
                session_path=options.session_path,
                initial_prompt=options.initial_prompt,
                spawned_at=now,
                last_activity=now,
                allocated_budget=options.allocated_budget or 0.0,
                depth=depth,
                root_session_id=root_session_id,
            )
            state_db.register_agent(db_path=self.db_path, record=record)
            self._index(record)
            snapshot = replace(record)

        logger.info(f"Agent spawned: {record.name} ({record.id}) parent={record.parent_id} depth={depth}")
        self.events.emit(channels.AGENT_SPAWNED, snapshot)
        return snapshot

    def set_pid(self, agent_id: str, pid: int) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                logger.warning(f"Cannot set PID - agent not found: {agent_id}")
                return
            agent.pid = pid
        state_db.set_agent_pid(db_path=self.db_path, agent_id=agent_id, pid=pid)
        logger.debug(f"Agent {agent_id} PID set to {pid}")

    def _transition(
        self,
        agent_id: str,
        to_status: AgentStatus,
        error_message: Optional[str] = None,
    ) -> Optional[AgentRecord]:
        """
        Move an agent along a state machine edge.

        Returns:
            Copy of the updated record, or None if the agent is unknown or
            the edge is not allowed (logged at DEBUG)
        """
        now = self._clock()
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                logger.debug(f"Ignoring {to_status.value} for unknown agent {agent_id}")
                return None
            if not is_valid_agent_transition(agent.status, to_status):
                logger.debug(f"Ignoring invalid transition {agent.status.value} -> {to_status.value} for {agent_id}")
                return None

            agent.status = to_status
            agent.last_activity = now
            if error_message is not None:
                agent.error_message = error_message
            if to_status not in LIVE_STATUSES:
                agent.completed_at = now
            snapshot = replace(agent)

        state_db.update_agent_status(
            db_path=self.db_path,
            agent_id=agent_id,
            status=to_status.value,
            last_activity=now,
            error_message=error_message,
            completed_at=snapshot.completed_at,
        )
        return snapshot

    def mark_ready(self, agent_id: str) -> None:
        agent = self._transition(agent_id, AgentStatus.READY)
        if agent:
            self.events.emit(channels.AGENT_READY, agent)

    def mark_active(self, agent_id: str) -> None:
        """Mark an agent as producing output. Already-active agents only get a fresh timestamp."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent and agent.status == AgentStatus.ACTIVE:
                self._touch(agent)
                return
            agent = self._transition(agent_id, AgentStatus.ACTIVE)
        if agent:
            logger.info(f"Agent active: {agent.name} ({agent.id})")
            self.events.emit(channels.AGENT_ACTIVE, agent)

    def mark_idle(self, agent_id: str) -> None:
        agent = self._transition(agent_id, AgentStatus.IDLE)
        if agent:
            logger.info(f"Agent idle: {agent.name} ({agent.id})")
            self.events.emit(channels.AGENT_IDLE, agent)

    def complete(self, agent_id: str, exit_code: int = 0) -> None:
        """
        Mark an agent as completed.

        The stored status is always COMPLETED. A nonzero exit code is
        signalled by publishing agent:error instead of agent:completed.
        """
        now = self._clock()
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                logger.debug(f"Ignoring completion of unknown agent {agent_id}")
                return
            if not is_valid_agent_transition(agent.status, AgentStatus.COMPLETED):
                logger.debug(f"Ignoring completion of {agent.status.value} agent {agent_id}")
                return
            agent.status = AgentStatus.COMPLETED
            agent.exit_code = exit_code
            agent.completed_at = now
            agent.last_activity = now
            snapshot = replace(agent)

        state_db.complete_agent(db_path=self.db_path, agent_id=agent_id, exit_code=exit_code, completed_at=now)
        logger.info(f"Agent completed: {snapshot.name} ({snapshot.id}) with exit code {exit_code}")

        if exit_code == 0:
            self.events.emit(channels.AGENT_COMPLETED, snapshot)
        else:
            self.events.emit(channels.AGENT_ERROR, snapshot, f"Exited with code {exit_code}")

    def error(self, agent_id: str, error_message: str) -> None:
        agent = self._transition(agent_id, AgentStatus.ERROR, error_message=error_message)
        if agent:
            logger.error(f"Agent error: {agent.name} ({agent.id}): {error_message}")
            self.events.emit(channels.AGENT_ERROR, agent, error_message)

    def terminate_agent(self, agent_id: str) -> None:
        """Terminate an agent and drop its session mappings."""
        self.sessions.clear_for_agent(agent_id)
        agent = self._transition(agent_id, AgentStatus.TERMINATED)
        if agent:
            logger.info(f"Agent terminated: {agent.name} ({agent.id})")
            self.events.emit(channels.AGENT_TERMINATED, agent)

    def _touch(self, agent: AgentRecord) -> None:
        agent.last_activity = self._clock()
        state_db.update_agent_activity(db_path=self.db_path, agent_id=agent.id, last_activity=agent.last_activity)

    def record_activity(self, agent_id: str) -> None:
        """Refresh last_activity of a live agent without changing its status."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent or not agent.is_live:
                logger.debug(f"Ignoring activity for missing or finished agent {agent_id}")
                return
            self._touch(agent)
            snapshot = replace(agent)
        self.events.emit(channels.AGENT_RECORD_ACTIVITY, snapshot)

    # ========================================================================
    # BUDGET AND METRICS
    # ========================================================================

    def allocate_budget(self, agent_id: str, amount: float) -> bool:
        """
        Set an agent's allocation directly (used for root agents).

        Raises:
            sqlite3.Error: If the allocation cannot be persisted
        """
        if amount < 0:
            return False
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                return False
            state_db.update_agent_budget(db_path=self.db_path, agent_id=agent_id, allocated_budget=amount)
            agent.allocated_budget = amount
            snapshot = replace(agent)
        self.events.emit(channels.AGENT_BUDGET_ALLOCATED, snapshot, amount)
        return True

    def allocate_budget_to_child(self, parent_id: str, child_id: str, amount: float) -> bool:
        """
        Set a child's allocation out of the parent's remaining budget.

        Succeeds only if both agents exist and amount does not exceed
        parent.allocated_budget - parent.spent_budget. The parent's own
        allocation is not reduced. On failure nothing is mutated.

        Returns:
            True if the child's allocation was set

        Raises:
            sqlite3.Error: If the allocation cannot be persisted
        """
        if amount < 0:
            return False
        with self._lock:
            parent = self._agents.get(parent_id)
            child = self._agents.get(child_id)
            if not parent or not child:
                logger.debug(f"Budget allocation {parent_id} -> {child_id} refused: agent not found")
                return False

            available = parent.allocated_budget - parent.spent_budget
            if amount > available:
                logger.info(
                    f"Budget allocation refused: {amount} requested for {child.name}, "
                    f"{available} available on {parent.name}"
                )
                return False

            state_db.update_agent_budget(db_path=self.db_path, agent_id=child_id, allocated_budget=amount)
            child.allocated_budget = amount
            snapshot = replace(child)

        logger.info(f"Allocated {amount} from {parent_id} to {child_id}")
        self.events.emit(channels.AGENT_BUDGET_ALLOCATED, snapshot, amount)
        return True

    def record_spend(self, agent_id: str, amount: float) -> None:
        """Add to spent_budget. Spend is never clamped to the allocation."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                logger.debug(f"Ignoring spend for unknown agent {agent_id}")
                return
            agent.spent_budget += amount
            exceeded = agent.allocated_budget > 0 and agent.spent_budget >= agent.allocated_budget
            snapshot = replace(agent)

        try:
            state_db.update_agent_budget(db_path=self.db_path, agent_id=agent_id, spent_budget=snapshot.spent_budget)
        except Exception as e:
            logger.error(f"Failed to persist spend for agent {agent_id}: {e}")

        if exceeded:
            logger.warning(
                f"Agent {snapshot.name} ({agent_id}) reached its budget: "
                f"{snapshot.spent_budget} spent of {snapshot.allocated_budget}"
            )
            self.events.emit(channels.AGENT_BUDGET_EXCEEDED, snapshot)

    def record_tool_call(self, agent_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                return
            agent.tool_calls += 1
            tool_calls, tokens = agent.tool_calls, agent.tokens_used
        state_db.update_agent_metrics(db_path=self.db_path, agent_id=agent_id, tool_calls=tool_calls, tokens_used=tokens)

    def record_tokens(self, agent_id: str, tokens: int) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
            if not agent:
                return
            agent.tokens_used += tokens
            tool_calls, total = agent.tool_calls, agent.tokens_used
        state_db.update_agent_metrics(db_path=self.db_path, agent_id=agent_id, tool_calls=tool_calls, tokens_used=total)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return replace(agent) if agent else None

    def exists(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._agents

    def _select(self, predicate: Callable[[AgentRecord], bool]) -> List[AgentRecord]:
        with self._lock:
            agents = [replace(a) for a in self._agents.values() if predicate(a)]
        agents.sort(key=lambda a: a.spawned_at)
        return agents

    def get_all_agents(self) -> List[AgentRecord]:
        return self._select(lambda a: True)

    def get_active_agents(self) -> List[AgentRecord]:
        """All live agents (spawning, ready, active, idle)."""
        return self._select(lambda a: a.is_live)

    def get_agents_by_status(self, status: AgentStatus) -> List[AgentRecord]:
        status = AgentStatus(status)
        return self._select(lambda a: a.status == status)

    def find_agents_by_name(self, pattern: str) -> List[AgentRecord]:
        """Case-insensitive regex search on agent names. Invalid regexes match literally."""
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            regex = re.compile(re.escape(pattern), re.IGNORECASE)
        return self._select(lambda a: regex.search(a.name) is not None)

    def get_agent_by_session(self, session_id: str) -> Optional[AgentRecord]:
        """Look up the agent bound to a CLI session, falling back to the state db."""
        agent_id = self.sessions.get(session_id)
        if agent_id:
            agent = self.get_agent(agent_id)
            if agent:
                return agent

        stored = state_db.find_agent_by_session(db_path=self.db_path, session_id=session_id)
        if not stored:
            return None
        # Prefer the live in-memory copy when the store knows the id
        return self.get_agent(stored.id) or stored

    def get_stats(self) -> AgentStats:
        by_status = {status.value: 0 for status in AgentStatus}
        with self._lock:
            for agent in self._agents.values():
                by_status[agent.status.value] += 1
            total = len(self._agents)

        return AgentStats(
            total=total,
            active=by_status['spawning'] + by_status['ready'] + by_status['active'],
            idle=by_status['idle'],
            completed=by_status['completed'],
            error=by_status['error'],
            by_status=by_status,
        )

    # ========================================================================
    # HIERARCHY
    # ========================================================================

    def get_children(self, parent_id: str) -> List[AgentRecord]:
        with self._lock:
            children = [replace(self._agents[cid]) for cid in self._children.get(parent_id, []) if cid in self._agents]
        children.sort(key=lambda a: a.spawned_at)
        return children

    def get_root_agents(self) -> List[AgentRecord]:
        """Agents with no parent, or whose parent is not in the registry."""
        with self._lock:
            return self._select(lambda a: a.parent_id is None or a.parent_id not in self._agents)

    def get_descendants(self, agent_id: str) -> List[AgentRecord]:
        """All agents below agent_id, breadth-first."""
        result: List[AgentRecord] = []
        with self._lock:
            seen: Set[str] = {agent_id}
            queue = [agent_id]
            while queue:
                current = queue.pop(0)
                for child in self.get_children(current):
                    if child.id in seen:
                        continue
                    seen.add(child.id)
                    result.append(child)
                    queue.append(child.id)
        return result

    def get_ancestors(self, agent_id: str) -> List[AgentRecord]:
        """Parent chain of agent_id, nearest first."""
        ancestors: List[AgentRecord] = []
        with self._lock:
            agent = self._agents.get(agent_id)
            seen: Set[str] = {agent_id}
            while agent and agent.parent_id and agent.parent_id not in seen:
                parent = self._agents.get(agent.parent_id)
                if not parent:
                    break
                seen.add(parent.id)
                ancestors.append(replace(parent))
                agent = parent
        return ancestors

    def _build_node(self, agent_id: str, seen: Set[str]) -> AgentTreeNode:
        seen.add(agent_id)
        node = AgentTreeNode(agent=replace(self._agents[agent_id]))
        for child in self.get_children(agent_id):
            if child.id not in seen:
                node.children.append(self._build_node(child.id, seen))
        return node

    def get_agent_tree(self) -> List[AgentTreeNode]:
        with self._lock:
            seen: Set[str] = set()
            return [self._build_node(root.id, seen) for root in self.get_root_agents()]

    def get_subtree(self, agent_id: str) -> Optional[AgentTreeNode]:
        with self._lock:
            if agent_id not in self._agents:
                return None
            return self._build_node(agent_id, set())

    def get_hierarchy_summary(self, root_session_id: str) -> Optional[HierarchySummary]:
        """Aggregate budget and status counts over every agent sharing a root session."""
        members = self._select(lambda a: a.root_session_id == root_session_id)
        if not members:
            return None

        failed = sum(
            1 for a in members
            if a.status == AgentStatus.ERROR or (a.status == AgentStatus.COMPLETED and a.exit_code)
        )
        completed = sum(1 for a in members if a.status == AgentStatus.COMPLETED and not a.exit_code)

        return HierarchySummary(
            root_id=root_session_id,
            total_agents=len(members),
            max_depth=max(a.depth for a in members),
            total_budget_allocated=sum(a.allocated_budget for a in members),
            total_budget_spent=sum(a.spent_budget for a in members),
            running_agents=sum(1 for a in members if a.is_live),
            completed_agents=completed,
            failed_agents=failed,
        )

    # ========================================================================
    # CLEANUP
    # ========================================================================

    def _remove(self, agent_ids: List[str], reason: str) -> int:
        if not agent_ids:
            return 0
        with self._lock:
            removed = [r for r in (self._unindex(aid) for aid in agent_ids) if r]
            for record in removed:
                self.sessions.clear_for_agent(record.id)
        try:
            state_db.delete_agents(db_path=self.db_path, agent_ids=agent_ids)
        except Exception as e:
            logger.error(f"Failed to delete {len(agent_ids)} agents from state db: {e}")

        for record in removed:
            self.events.emit(channels.AGENT_REMOVED, record, reason)
        return len(removed)

    def clear_all_agents(self) -> int:
        """Remove every agent from memory and the store."""
        with self._lock:
            count = len(self._agents)
            self._agents.clear()
            self._children.clear()
            self.sessions.clear()
        try:
            state_db.delete_all_agents(db_path=self.db_path)
        except Exception as e:
            logger.error(f"Failed to clear agent registry: {e}")
        logger.info(f"Cleared {count} agents from registry")
        return count

    def cleanup_garbage_agents(
        self,
        orphan_max_age: float = ORPHAN_AGENT_MAX_AGE_SECONDS,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Remove garbage records.

        A record is garbage when its name is a tool identifier (false-positive
        detection), or when it is still live with no session path and was
        spawned more than orphan_max_age seconds ago. The second rule reclaims
        agents stuck in spawning/ready, which the idle and stale passes never see.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=orphan_max_age)
        with self._lock:
            garbage = [
                a.id for a in self._agents.values()
                if is_tool_name(a.name)
                or (a.is_live and a.session_path is None and a.spawned_at < cutoff)
            ]
            removed = self._remove(garbage, 'garbage')
        try:
            state_db.cleanup_garbage_agents(
                db_path=self.db_path, orphan_max_age_seconds=orphan_max_age, now=now,
            )
        except Exception as e:
            logger.error(f"Garbage cleanup in state db failed: {e}")
        if removed:
            logger.info(f"Cleaned up {removed} garbage agent entries")
        return removed

    def cleanup_stale_records(self, max_age: float = STALE_RECORD_MAX_AGE_SECONDS, now: Optional[datetime] = None) -> int:
        """Remove records of any status whose last activity is older than max_age seconds."""
        now = now or self._clock()
        cutoff = now - timedelta(seconds=max_age)
        with self._lock:
            stale = [a.id for a in self._agents.values() if a.last_activity < cutoff]
            removed = self._remove(stale, 'stale')
        try:
            state_db.cleanup_stale_agents(db_path=self.db_path, max_age_seconds=max_age, now=now)
        except Exception as e:
            logger.error(f"Stale record cleanup in state db failed: {e}")
        if removed:
            logger.info(f"Cleaned up {removed} stale agent records")
        return removed

    # ========================================================================
    # SESSION MAP
    # ========================================================================

    def validate_session_map(self) -> int:
        """Drop session mappings that point to missing or finished agents."""
        def is_valid(agent_id: str) -> bool:
            with self._lock:
                agent = self._agents.get(agent_id)
                return bool(agent and agent.is_live)

        removed = self.sessions.validate(is_valid)
        if removed:
            logger.info(f"Session map validation: cleaned up {len(removed)} orphaned entries, {len(self.sessions)} remaining")
        return len(removed)

    def wire_hook_events(self, hook_bus: EventBus) -> None:
        """
        Keep the session map in sync with a hook notification source.

        session:start and agent:start bind the session to the agent the store
        knows for it. session:end and agent:stop drop the binding.
        """
        self.unwire_hook_events()

        def bind(payload=None, **_):
            session_id = (payload or {}).get('session_id')
            if not session_id:
                return
            agent = self.get_agent_by_session(session_id)
            if agent:
                self.sessions.set(session_id, agent.id)
                logger.debug(f"Mapped session {session_id} to agent {agent.id}")

        def unbind(payload=None, **_):
            session_id = (payload or {}).get('session_id')
            if session_id and self.sessions.remove(session_id):
                logger.debug(f"Removed session mapping for {session_id}")

        self._hook_bus = hook_bus
        for channel, listener in (
            (channels.SESSION_START, bind),
            (channels.HOOK_AGENT_START, bind),
            (channels.SESSION_END, unbind),
            (channels.HOOK_AGENT_STOP, unbind),
        ):
            hook_bus.on(channel, listener)
            self._hook_listeners.append((channel, listener))
        logger.info("Hook events wired up successfully")

    def unwire_hook_events(self) -> None:
        if self._hook_bus is None:
            return
        for channel, listener in self._hook_listeners:
            self._hook_bus.off(channel, listener)
        logger.info(f"Removed {len(self._hook_listeners)} hook listeners")
        self._hook_listeners = []
        self._hook_bus = None
