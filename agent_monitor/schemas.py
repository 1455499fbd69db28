"""Pydantic models for the Agent Monitor HTTP API."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


AgentStatusLiteral = Literal["spawning", "ready", "active", "idle", "completed", "error", "terminated"]


# Agent schemas
class AgentResponse(BaseModel):
    """Agent information."""
    id: str
    name: str
    cwd: str
    status: AgentStatusLiteral
    pid: Optional[int] = None
    parent_id: Optional[str] = None
    template_id: Optional[str] = None
    session_path: Optional[str] = None
    initial_prompt: Optional[str] = None
    spawned_at: datetime
    last_activity: datetime
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    allocated_budget: float = 0.0
    spent_budget: float = 0.0
    tool_calls: int = 0
    tokens_used: int = 0
    depth: int = 0
    root_session_id: Optional[str] = None


class AgentTreeNodeResponse(BaseModel):
    """Agent with its children, recursively."""
    agent: AgentResponse
    children: List["AgentTreeNodeResponse"] = Field(default_factory=list)


class AgentStatsResponse(BaseModel):
    total: int
    active: int = Field(description="spawning + ready + active")
    idle: int
    completed: int
    error: int
    by_status: Dict[str, int]


class TerminateResponse(BaseModel):
    agent_id: str
    status: AgentStatusLiteral


# Budget schemas
class BudgetAllocationRequest(BaseModel):
    parent_id: str
    child_id: str
    amount: float = Field(ge=0)


class BudgetAllocationResponse(BaseModel):
    success: bool
    parent_remaining: Optional[float] = None
    child_allocated: Optional[float] = None


# Terminal schemas
class TerminalOutputRequest(BaseModel):
    data: str
    session_id: Optional[str] = None


class StreamEventResponse(BaseModel):
    type: str
    terminal_id: int
    timestamp: float
    data: Dict[str, Any] = Field(default_factory=dict)


class TerminalOutputResponse(BaseModel):
    terminal_id: int
    events: List[StreamEventResponse]


class TerminalExitResponse(BaseModel):
    terminal_id: int
    terminated: int


class StreamMetricsResponse(BaseModel):
    terminal_id: int
    session_id: Optional[str] = None
    tool_calls: int
    thinking_blocks: int
    errors: int
    warnings: int
    output_bytes: int
    start_time: float
    last_activity_time: float
    estimated_tokens: int


class TerminalBufferResponse(BaseModel):
    terminal_id: int
    size: int
    content: str


# Health
class HealthResponse(BaseModel):
    status: str
    version: str
    uptime: float
    timestamp: datetime
    agents: int
    policies_running: bool
    websocket_connections: int
