#!/usr/bin/env python3
"""
Agent Monitor MCP Server

Exposes agent detection and the lifecycle registry as MCP tools so a
coding agent (or its host) can feed terminal output and query the agents
that were detected from it.

Run with:
    python -m agent_monitor.mcp_server
"""

import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .config import configure_logging
from .models import AgentStatus
from .service import get_monitor

logger = logging.getLogger(__name__)

mcp = FastMCP("Agent Monitor")


def _not_found(agent_id: str) -> Dict[str, Any]:
    return {"success": False, "error": f"Agent {agent_id} not found"}


# ============================================================================
# TERMINAL HOST TOOLS
# ============================================================================

def analyze_terminal_output(terminal_id: int, data: str, session_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Analyze a chunk of terminal output and register any agents it reveals.

    Args:
        terminal_id: Terminal the output came from
        data: Raw output chunk (escape sequences allowed)
        session_id: CLI session bound to the terminal, if known

    Returns:
        Detected stream events
    """
    events = get_monitor().feed_output(terminal_id, data, session_id=session_id)
    return {
        "success": True,
        "terminal_id": terminal_id,
        "event_count": len(events),
        "events": [event.to_dict() for event in events],
    }


def notify_terminal_exited(terminal_id: int) -> Dict[str, Any]:
    """
    Tell the monitor a terminal closed; its live agents are terminated.

    Args:
        terminal_id: Terminal that exited
    """
    terminated = get_monitor().terminal_exited(terminal_id)
    return {"success": True, "terminal_id": terminal_id, "terminated": terminated}


def get_terminal_metrics(terminal_id: int) -> Dict[str, Any]:
    """Rolling output metrics for a terminal."""
    metrics = get_monitor().analyzer.get_metrics(terminal_id)
    if not metrics:
        return {"success": False, "error": f"No metrics for terminal {terminal_id}"}
    return {"success": True, "metrics": metrics.to_dict()}


# ============================================================================
# REGISTRY TOOLS
# ============================================================================

def list_agents(status: Optional[str] = None, name: Optional[str] = None) -> Dict[str, Any]:
    """
    List detected agents.

    Args:
        status: Optional status filter (spawning, ready, active, idle,
            completed, error, terminated)
        name: Optional case-insensitive name pattern
    """
    registry = get_monitor().registry
    if status:
        try:
            status = AgentStatus(status)
        except ValueError:
            return {"success": False, "error": f"Unknown status: {status}"}

    if name:
        agents = registry.find_agents_by_name(name)
        if status:
            agents = [a for a in agents if a.status == status]
    elif status:
        agents = registry.get_agents_by_status(status)
    else:
        agents = registry.get_all_agents()

    return {"success": True, "count": len(agents), "agents": [a.to_dict() for a in agents]}


def get_agent(agent_id: str) -> Dict[str, Any]:
    """Details for one agent."""
    agent = get_monitor().registry.get_agent(agent_id)
    if not agent:
        return _not_found(agent_id)
    return {"success": True, "agent": agent.to_dict()}


def get_agent_tree(agent_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Agent hierarchy.

    Args:
        agent_id: Root of the subtree to return. Omit for the whole forest.
    """
    registry = get_monitor().registry
    if agent_id:
        node = registry.get_subtree(agent_id)
        if not node:
            return _not_found(agent_id)
        return {"success": True, "tree": node.to_dict()}
    return {"success": True, "trees": [node.to_dict() for node in registry.get_agent_tree()]}


def get_agent_stats() -> Dict[str, Any]:
    """Agent counts by status."""
    return {"success": True, "stats": get_monitor().registry.get_stats().to_dict()}


def allocate_child_budget(parent_id: str, child_id: str, amount: float) -> Dict[str, Any]:
    """
    Allocate part of a parent agent's remaining budget to a child.

    Fails without changing anything if the amount exceeds what the parent
    has left.
    """
    registry = get_monitor().registry
    if not registry.exists(parent_id):
        return _not_found(parent_id)
    if not registry.exists(child_id):
        return _not_found(child_id)

    success = registry.allocate_budget_to_child(parent_id, child_id, amount)
    result = {"success": success, "parent_id": parent_id, "child_id": child_id, "amount": amount}
    if not success:
        parent = registry.get_agent(parent_id)
        result["error"] = f"Insufficient budget: {parent.remaining_budget} available"
    return result


def terminate_agent(agent_id: str) -> Dict[str, Any]:
    """Terminate an agent. Finished agents keep their status."""
    registry = get_monitor().registry
    if not registry.exists(agent_id):
        return _not_found(agent_id)
    registry.terminate_agent(agent_id)
    agent = registry.get_agent(agent_id)
    return {"success": True, "agent_id": agent_id, "status": agent.status.value}


for _tool in (
    analyze_terminal_output,
    notify_terminal_exited,
    get_terminal_metrics,
    list_agents,
    get_agent,
    get_agent_tree,
    get_agent_stats,
    allocate_child_budget,
    terminate_agent,
):
    mcp.tool(_tool)


if __name__ == "__main__":
    configure_logging()
    get_monitor()
    mcp.run()
