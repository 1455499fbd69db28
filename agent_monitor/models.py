"""
Core data types for agent detection and lifecycle tracking.

Holds the agent status state machine, the AgentRecord entity and the small
value types passed between the stream analyzer, the bridge and the registry.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# AGENT STATUS ENUM (7-state machine)
# ============================================================================

class AgentStatus(str, Enum):
    """
    Agent status enum defining the lifecycle of a detected agent.

    State Machine Flow:
        SPAWNING → READY → ACTIVE ⇄ IDLE → COMPLETED | ERROR | TERMINATED

        Any live state can jump straight to COMPLETED, ERROR or TERMINATED.
        COMPLETED, ERROR and TERMINATED are absorbing.

    States:
        SPAWNING: Registered, process not yet confirmed
        READY: Waiting for its first input
        ACTIVE: Producing output
        IDLE: No output for longer than the idle threshold
        COMPLETED: Finished (successfully or with a nonzero exit code)
        ERROR: Failed with an attached message
        TERMINATED: Stopped by the user, by terminal exit or by a policy
    """
    SPAWNING = "spawning"
    READY = "ready"
    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"
    TERMINATED = "terminated"


LIVE_STATUSES = frozenset({
    AgentStatus.SPAWNING,
    AgentStatus.READY,
    AgentStatus.ACTIVE,
    AgentStatus.IDLE,
})

ABSORBING_STATUSES = frozenset({
    AgentStatus.COMPLETED,
    AgentStatus.ERROR,
    AgentStatus.TERMINATED,
})

# Valid agent status transitions (from_status -> list of valid to_statuses)
VALID_AGENT_TRANSITIONS: Dict[AgentStatus, List[AgentStatus]] = {
    AgentStatus.SPAWNING: [
        AgentStatus.READY, AgentStatus.ACTIVE,
        AgentStatus.COMPLETED, AgentStatus.ERROR, AgentStatus.TERMINATED,
    ],
    AgentStatus.READY: [
        AgentStatus.ACTIVE, AgentStatus.IDLE,
        AgentStatus.COMPLETED, AgentStatus.ERROR, AgentStatus.TERMINATED,
    ],
    AgentStatus.ACTIVE: [
        AgentStatus.IDLE,
        AgentStatus.COMPLETED, AgentStatus.ERROR, AgentStatus.TERMINATED,
    ],
    AgentStatus.IDLE: [
        AgentStatus.ACTIVE,
        AgentStatus.COMPLETED, AgentStatus.ERROR, AgentStatus.TERMINATED,
    ],
    AgentStatus.COMPLETED: [],  # Absorbing
    AgentStatus.ERROR: [],  # Absorbing
    AgentStatus.TERMINATED: [],  # Absorbing
}


def is_valid_agent_transition(from_status: AgentStatus, to_status: AgentStatus) -> bool:
    """
    Check if a status transition is allowed by the agent state machine.

    Args:
        from_status: Current status
        to_status: Requested status

    Returns:
        True if the edge exists in VALID_AGENT_TRANSITIONS
    """
    return AgentStatus(to_status) in VALID_AGENT_TRANSITIONS.get(AgentStatus(from_status), [])


def is_live_status(status: AgentStatus) -> bool:
    return AgentStatus(status) in LIVE_STATUSES


# ============================================================================
# AGENT RECORD
# ============================================================================

@dataclass
class AgentRecord:
    """A detected agent and everything the registry knows about it."""
    id: str
    name: str
    cwd: str
    status: AgentStatus = AgentStatus.SPAWNING
    pid: Optional[int] = None
    parent_id: Optional[str] = None
    template_id: Optional[str] = None
    session_path: Optional[str] = None
    initial_prompt: Optional[str] = None
    spawned_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    allocated_budget: float = 0.0
    spent_budget: float = 0.0
    tool_calls: int = 0
    tokens_used: int = 0
    depth: int = 0
    root_session_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def remaining_budget(self) -> float:
        return self.allocated_budget - self.spent_budget

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict (enum values and ISO timestamps)."""
        data = asdict(self)
        data['status'] = AgentStatus(self.status).value
        for key in ('spawned_at', 'last_activity', 'completed_at'):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data


@dataclass
class AgentSpawnOptions:
    """Options accepted by AgentRegistry.spawn()."""
    name: str
    cwd: str
    parent_id: Optional[str] = None
    template_id: Optional[str] = None
    initial_prompt: Optional[str] = None
    session_path: Optional[str] = None
    allocated_budget: float = 0.0


@dataclass
class AgentTreeNode:
    agent: AgentRecord
    children: List['AgentTreeNode'] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent': self.agent.to_dict(),
            'children': [child.to_dict() for child in self.children],
        }


@dataclass
class AgentStats:
    total: int
    active: int
    idle: int
    completed: int
    error: int
    by_status: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HierarchySummary:
    """Aggregate view of one agent tree, rooted at root_id."""
    root_id: str
    total_agents: int
    max_depth: int
    total_budget_allocated: float
    total_budget_spent: float
    running_agents: int
    completed_agents: int
    failed_agents: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# STREAM TYPES
# ============================================================================

class StreamEventType(str, Enum):
    """Closed set of event kinds the stream analyzer can produce."""
    AGENT_SPAWN = "agent_spawn"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ACTIVITY = "agent_activity"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    THINKING_START = "thinking_start"
    THINKING_END = "thinking_end"
    ERROR = "error"
    WARNING = "warning"
    PROMPT_READY = "prompt_ready"
    PROCESSING = "processing"
    CODE_BLOCK = "code_block"
    FILE_REFERENCE = "file_reference"
    COST_UPDATE = "cost_update"
    TOKEN_USAGE = "token_usage"


# Categories matched against output with escape sequences removed
AGENT_EVENT_TYPES = frozenset({
    StreamEventType.AGENT_SPAWN,
    StreamEventType.AGENT_COMPLETE,
    StreamEventType.AGENT_ACTIVITY,
})


@dataclass
class StreamEvent:
    type: StreamEventType
    terminal_id: int
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': StreamEventType(self.type).value,
            'terminal_id': self.terminal_id,
            'timestamp': self.timestamp,
            'data': dict(self.data),
        }


@dataclass
class ToolCallRecord:
    """An open (or just-closed) tool invocation seen in terminal output."""
    name: str
    input: str
    start_time: float
    end_time: Optional[float] = None
    success: Optional[bool] = None
    result: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int(round((self.end_time - self.start_time) * 1000))


@dataclass
class StreamMetrics:
    """Rolling per-terminal counters maintained by the stream analyzer."""
    terminal_id: int
    start_time: float
    last_activity_time: float
    session_id: Optional[str] = None
    tool_calls: int = 0
    thinking_blocks: int = 0
    errors: int = 0
    warnings: int = 0
    output_bytes: int = 0
    estimated_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    'AgentStatus',
    'LIVE_STATUSES',
    'ABSORBING_STATUSES',
    'VALID_AGENT_TRANSITIONS',
    'is_valid_agent_transition',
    'is_live_status',
    'AgentRecord',
    'AgentSpawnOptions',
    'AgentTreeNode',
    'AgentStats',
    'HierarchySummary',
    'StreamEventType',
    'AGENT_EVENT_TYPES',
    'StreamEvent',
    'ToolCallRecord',
    'StreamMetrics',
]
