"""
FastAPI server for the Agent Monitor.

REST routes expose the registry queries and the terminal host interface;
/ws pushes every registry lifecycle event to connected clients.

Run standalone with:
    python -m agent_monitor.api
"""

import time
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import API_CORS_ORIGINS, API_HOST, API_PORT, VERSION, configure_logging
from .events import REGISTRY_CHANNELS
from .models import AgentRecord, AgentStatus
from .schemas import (
    AgentResponse,
    AgentStatsResponse,
    AgentTreeNodeResponse,
    BudgetAllocationRequest,
    BudgetAllocationResponse,
    HealthResponse,
    StreamEventResponse,
    StreamMetricsResponse,
    TerminalBufferResponse,
    TerminalExitResponse,
    TerminalOutputRequest,
    TerminalOutputResponse,
    TerminateResponse,
)
from .service import AgentMonitor, get_monitor

logger = logging.getLogger(__name__)


# ============================================================================
# WEBSOCKET CONNECTIONS
# ============================================================================

class ConnectionManager:
    """Tracks WebSocket clients and fans registry events out to them."""

    def __init__(self):
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        await websocket.send_json({
            "type": "connection_status",
            "status": "connected",
            "timestamp": datetime.now().isoformat()
        })
        logger.info(f"WebSocket client connected. Total connections: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Remaining connections: {len(self._connections)}")

    async def broadcast(self, message: Dict[str, Any]):
        async with self._lock:
            connections = list(self._connections)

        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to websocket client: {e}")
                disconnected.append(websocket)

        for websocket in disconnected:
            await self.disconnect(websocket)

    def publish_threadsafe(self, message: Dict[str, Any]) -> None:
        """Schedule a broadcast from any thread (registry events fire off-loop)."""
        if self.loop is None or self.loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(message), self.loop)

    @property
    def connection_count(self) -> int:
        return len(self._connections)


def _registry_event_message(channel: str, args: tuple) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "type": channel,
        "timestamp": datetime.now().isoformat(),
    }
    if args and isinstance(args[0], AgentRecord):
        message["agent"] = args[0].to_dict()
        args = args[1:]
    if args:
        message["detail"] = args[0] if len(args) == 1 else list(args)
    return message


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter()


def _monitor(request: Request) -> AgentMonitor:
    return request.app.state.monitor


def _agent_or_404(monitor: AgentMonitor, agent_id: str) -> AgentRecord:
    agent = monitor.registry.get_agent(agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return agent


@router.get("/agents", response_model=List[AgentResponse], tags=["agents"])
def list_agents(
    request: Request,
    status: Optional[AgentStatus] = Query(None, description="Filter by status"),
    name: Optional[str] = Query(None, description="Case-insensitive name pattern"),
):
    """List agents, optionally filtered by status and/or name pattern."""
    registry = _monitor(request).registry
    if name:
        agents = registry.find_agents_by_name(name)
        if status:
            agents = [a for a in agents if a.status == status]
    elif status:
        agents = registry.get_agents_by_status(status)
    else:
        agents = registry.get_all_agents()
    return [a.to_dict() for a in agents]


@router.get("/agents/active", response_model=List[AgentResponse], tags=["agents"])
def list_active_agents(request: Request):
    return [a.to_dict() for a in _monitor(request).registry.get_active_agents()]


@router.get("/agents/stats", response_model=AgentStatsResponse, tags=["agents"])
def agent_stats(request: Request):
    return _monitor(request).registry.get_stats().to_dict()


@router.get("/agents/tree", response_model=List[AgentTreeNodeResponse], tags=["agents"])
def agent_tree(request: Request):
    return [node.to_dict() for node in _monitor(request).registry.get_agent_tree()]


@router.get("/agents/by-session/{session_id}", response_model=AgentResponse, tags=["agents"])
def agent_by_session(request: Request, session_id: str):
    agent = _monitor(request).registry.get_agent_by_session(session_id)
    if not agent:
        raise HTTPException(status_code=404, detail=f"No agent for session {session_id}")
    return agent.to_dict()


@router.post("/agents/budget/allocate", response_model=BudgetAllocationResponse, tags=["budget"])
def allocate_budget(request: Request, body: BudgetAllocationRequest):
    """Allocate part of a parent's remaining budget to a child."""
    monitor = _monitor(request)
    registry = monitor.registry
    parent = _agent_or_404(monitor, body.parent_id)
    _agent_or_404(monitor, body.child_id)

    success = registry.allocate_budget_to_child(body.parent_id, body.child_id, body.amount)
    child = registry.get_agent(body.child_id)
    return {
        "success": success,
        "parent_remaining": parent.remaining_budget,
        "child_allocated": child.allocated_budget if child else None,
    }


@router.get("/agents/{agent_id}", response_model=AgentResponse, tags=["agents"])
def get_agent(request: Request, agent_id: str):
    return _agent_or_404(_monitor(request), agent_id).to_dict()


@router.get("/agents/{agent_id}/tree", response_model=AgentTreeNodeResponse, tags=["agents"])
def agent_subtree(request: Request, agent_id: str):
    node = _monitor(request).registry.get_subtree(agent_id)
    if not node:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return node.to_dict()


@router.get("/agents/{agent_id}/ancestors", response_model=List[AgentResponse], tags=["agents"])
def agent_ancestors(request: Request, agent_id: str):
    monitor = _monitor(request)
    _agent_or_404(monitor, agent_id)
    return [a.to_dict() for a in monitor.registry.get_ancestors(agent_id)]


@router.post("/agents/{agent_id}/terminate", response_model=TerminateResponse, tags=["agents"])
def terminate_agent(request: Request, agent_id: str):
    """Terminate an agent. Already-finished agents keep their status."""
    monitor = _monitor(request)
    _agent_or_404(monitor, agent_id)
    monitor.registry.terminate_agent(agent_id)
    agent = _agent_or_404(monitor, agent_id)
    return {"agent_id": agent_id, "status": agent.status.value}


@router.post("/terminals/{terminal_id}/output", response_model=TerminalOutputResponse, tags=["terminals"])
def terminal_output(request: Request, terminal_id: int, body: TerminalOutputRequest):
    """Feed a chunk of terminal output to the analyzer."""
    events = _monitor(request).feed_output(terminal_id, body.data, session_id=body.session_id)
    return {
        "terminal_id": terminal_id,
        "events": [StreamEventResponse(**event.to_dict()) for event in events],
    }


@router.post("/terminals/{terminal_id}/exit", response_model=TerminalExitResponse, tags=["terminals"])
def terminal_exit(request: Request, terminal_id: int):
    terminated = _monitor(request).terminal_exited(terminal_id)
    return {"terminal_id": terminal_id, "terminated": terminated}


@router.get("/terminals/{terminal_id}/metrics", response_model=StreamMetricsResponse, tags=["terminals"])
def terminal_metrics(request: Request, terminal_id: int):
    metrics = _monitor(request).analyzer.get_metrics(terminal_id)
    if not metrics:
        raise HTTPException(status_code=404, detail=f"No metrics for terminal {terminal_id}")
    return metrics.to_dict()


@router.get("/terminals/{terminal_id}/buffer", response_model=TerminalBufferResponse, tags=["terminals"])
def terminal_buffer(request: Request, terminal_id: int):
    content = _monitor(request).analyzer.get_buffer(terminal_id)
    return {"terminal_id": terminal_id, "size": len(content), "content": content}


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(monitor: Optional[AgentMonitor] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        monitor: Monitor to serve. When omitted the process-wide monitor is
            created on startup and shut down with the app.
    """
    connection_manager = ConnectionManager()
    server_start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_monitor = monitor is None
        app.state.monitor = get_monitor() if owns_monitor else monitor
        connection_manager.loop = asyncio.get_running_loop()

        registry_events = app.state.monitor.registry.events
        listeners = []
        for channel in REGISTRY_CHANNELS:
            def forward(*args, _channel=channel):
                connection_manager.publish_threadsafe(_registry_event_message(_channel, args))
            registry_events.on(channel, forward)
            listeners.append((channel, forward))
        logger.info("Agent Monitor API started")

        yield

        for channel, listener in listeners:
            registry_events.off(channel, listener)
        await connection_manager.broadcast({
            "type": "server_shutdown",
            "message": "Server is shutting down"
        })
        connection_manager.loop = None
        if owns_monitor:
            app.state.monitor.shutdown()
        logger.info("Agent Monitor API stopped")

    app = FastAPI(
        title="Agent Monitor API",
        description="Agent detection and lifecycle tracking for CLI coding agents",
        version=VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=API_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.state.connection_manager = connection_manager

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    def health_check(request: Request):
        current = request.app.state.monitor
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime=time.time() - server_start_time,
            timestamp=datetime.now(),
            agents=current.registry.get_stats().total,
            policies_running=current.policies.is_running,
            websocket_connections=connection_manager.connection_count,
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await connection_manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_json()
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": datetime.now().isoformat()})
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected normally")
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            await connection_manager.disconnect(websocket)

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host=API_HOST, port=API_PORT, log_level="info")
