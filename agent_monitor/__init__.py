"""
Agent Monitor Module

Detects sub-agents from raw CLI terminal output and tracks their lifecycle.

Modules:
- patterns: Ordered pattern table and tool-name filtering
- stream_analyzer: Per-terminal stream analysis, buffers and metrics
- tool_calls: Tool start/end correlation and usage recording
- bridge: Dedup layer turning detections into registry mutations
- registry: Agent lifecycle state machine, hierarchy and budgets
- session_map: Session id to agent id cache
- policies: Background idle/stale/garbage policies
- state_db: SQLite persistence
- service: AgentMonitor composition root
- api / mcp_server: HTTP and MCP surfaces (imported on demand)
"""

from .config import VERSION as __version__

from .models import (
    AgentStatus,
    LIVE_STATUSES,
    ABSORBING_STATUSES,
    VALID_AGENT_TRANSITIONS,
    is_valid_agent_transition,
    AgentRecord,
    AgentSpawnOptions,
    AgentTreeNode,
    AgentStats,
    HierarchySummary,
    StreamEventType,
    StreamEvent,
    ToolCallRecord,
    StreamMetrics,
)

from .events import EventBus

from .patterns import (
    TOOL_NAMES,
    STREAM_PATTERNS,
    PatternDefinition,
    is_tool_name,
    strip_ansi,
)

from .tool_calls import ToolCallCorrelator
from .stream_analyzer import StreamAnalyzer
from .session_map import SessionAgentMap
from .registry import AgentRegistry
from .bridge import AgentBridge
from .policies import PolicyEngine
from .service import AgentMonitor, get_monitor, shutdown_monitor

__all__ = [
    '__version__',
    # Models
    'AgentStatus',
    'LIVE_STATUSES',
    'ABSORBING_STATUSES',
    'VALID_AGENT_TRANSITIONS',
    'is_valid_agent_transition',
    'AgentRecord',
    'AgentSpawnOptions',
    'AgentTreeNode',
    'AgentStats',
    'HierarchySummary',
    'StreamEventType',
    'StreamEvent',
    'ToolCallRecord',
    'StreamMetrics',
    # Events
    'EventBus',
    # Detection
    'TOOL_NAMES',
    'STREAM_PATTERNS',
    'PatternDefinition',
    'is_tool_name',
    'strip_ansi',
    'ToolCallCorrelator',
    'StreamAnalyzer',
    # Lifecycle
    'SessionAgentMap',
    'AgentRegistry',
    'AgentBridge',
    'PolicyEngine',
    'AgentMonitor',
    'get_monitor',
    'shutdown_monitor',
]
