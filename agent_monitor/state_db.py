"""
SQLite-backed persistence for the agent registry.

Design:
- The in-memory registry is the source of truth while the process runs.
- SQLite stores every AgentRecord so a restarted registry can reload the
  arena on cold start, plus an append-only log of detailed tool usage.
- Every call opens its own short-lived connection (WAL mode) so background
  policy threads and request handlers never share a connection.

Error handling:
- register_agent and update_agent_budget raise on failure (creation writes).
- The other update helpers log and return False.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .models import LIVE_STATUSES, AgentRecord, AgentStatus
from .patterns import is_tool_name

logger = logging.getLogger(__name__)

_initialized_paths = set()
_init_lock = threading.Lock()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(f"Unparseable timestamp in state db: {value!r}")
        return None


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")
    return conn


def _init_db(conn: sqlite3.Connection) -> None:
    """Initialize database schema with all required tables and indexes."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS agent_registry (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          cwd TEXT NOT NULL,
          status TEXT NOT NULL,
          pid INTEGER,
          parent_id TEXT,
          template_id TEXT,
          session_path TEXT,
          initial_prompt TEXT,
          spawned_at TEXT NOT NULL,
          last_activity TEXT NOT NULL,
          completed_at TEXT,
          exit_code INTEGER,
          error_message TEXT,
          allocated_budget REAL NOT NULL DEFAULT 0,
          spent_budget REAL NOT NULL DEFAULT 0,
          tool_calls INTEGER NOT NULL DEFAULT 0,
          tokens_used INTEGER NOT NULL DEFAULT 0,
          depth INTEGER NOT NULL DEFAULT 0,
          root_session_id TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_agent_registry_status ON agent_registry(status);
        CREATE INDEX IF NOT EXISTS idx_agent_registry_parent ON agent_registry(parent_id);
        CREATE INDEX IF NOT EXISTS idx_agent_registry_session ON agent_registry(session_path);

        CREATE TABLE IF NOT EXISTS tool_usage_detailed (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          session_id TEXT NOT NULL,
          tool_name TEXT NOT NULL,
          tool_input TEXT,
          tool_result_preview TEXT,
          success INTEGER NOT NULL,
          duration_ms INTEGER,
          token_cost INTEGER,
          recorded_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_tool_usage_session ON tool_usage_detailed(session_id);
        CREATE INDEX IF NOT EXISTS idx_tool_usage_tool ON tool_usage_detailed(tool_name);
        """
    )


def ensure_db(db_path: str) -> str:
    """Create the database file and schema if needed. Returns the absolute path."""
    db_path = os.path.abspath(os.path.expanduser(db_path))
    with _init_lock:
        if db_path in _initialized_paths and os.path.exists(db_path):
            return db_path
        os.makedirs(os.path.dirname(db_path), exist_ok=True)
        conn = _connect(db_path)
        try:
            _init_db(conn)
        finally:
            conn.close()
        _initialized_paths.add(db_path)
    return db_path


def _row_to_record(row: sqlite3.Row) -> AgentRecord:
    return AgentRecord(
        id=row['id'],
        name=row['name'],
        cwd=row['cwd'],
        status=AgentStatus(row['status']),
        pid=row['pid'],
        parent_id=row['parent_id'],
        template_id=row['template_id'],
        session_path=row['session_path'],
        initial_prompt=row['initial_prompt'],
        spawned_at=_parse_dt(row['spawned_at']) or datetime.now(),
        last_activity=_parse_dt(row['last_activity']) or datetime.now(),
        completed_at=_parse_dt(row['completed_at']),
        exit_code=row['exit_code'],
        error_message=row['error_message'],
        allocated_budget=row['allocated_budget'] or 0.0,
        spent_budget=row['spent_budget'] or 0.0,
        tool_calls=row['tool_calls'] or 0,
        tokens_used=row['tokens_used'] or 0,
        depth=row['depth'] or 0,
        root_session_id=row['root_session_id'],
    )


def _execute_update(db_path: str, sql: str, params: tuple, what: str) -> bool:
    """Run a single-row UPDATE. Logs failures instead of raising."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        cursor = conn.execute(sql, params)
        return cursor.rowcount > 0
    except Exception as e:
        logger.error(f"Failed to {what}: {e}")
        return False
    finally:
        conn.close()


# ============================================================================
# AGENT CRUD
# ============================================================================


def register_agent(*, db_path: str, record: AgentRecord) -> None:
    """Insert a new agent record. Raises sqlite3.Error on failure."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO agent_registry (
              id, name, cwd, status, pid, parent_id, template_id, session_path,
              initial_prompt, spawned_at, last_activity, completed_at, exit_code,
              error_message, allocated_budget, spent_budget, tool_calls,
              tokens_used, depth, root_session_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.name,
                record.cwd,
                AgentStatus(record.status).value,
                record.pid,
                record.parent_id,
                record.template_id,
                record.session_path,
                record.initial_prompt,
                _to_iso(record.spawned_at),
                _to_iso(record.last_activity),
                _to_iso(record.completed_at),
                record.exit_code,
                record.error_message,
                record.allocated_budget,
                record.spent_budget,
                record.tool_calls,
                record.tokens_used,
                record.depth,
                record.root_session_id,
            ),
        )
    finally:
        conn.close()


def get_agent(*, db_path: str, agent_id: str) -> Optional[AgentRecord]:
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM agent_registry WHERE id=?", (agent_id,)).fetchone()
        return _row_to_record(row) if row else None
    finally:
        conn.close()


def list_agents(*, db_path: str, status: Optional[str] = None) -> List[AgentRecord]:
    """All agent records, oldest first, optionally filtered by status."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        if status:
            rows = conn.execute(
                "SELECT * FROM agent_registry WHERE status=? ORDER BY spawned_at",
                (AgentStatus(status).value,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM agent_registry ORDER BY spawned_at").fetchall()
        return [_row_to_record(r) for r in rows]
    finally:
        conn.close()


def update_agent_status(
    *,
    db_path: str,
    agent_id: str,
    status: str,
    last_activity: Optional[datetime] = None,
    error_message: Optional[str] = None,
    completed_at: Optional[datetime] = None,
) -> bool:
    """Update an agent's status (and optionally its activity, error and completion stamps)."""
    return _execute_update(
        db_path,
        """
        UPDATE agent_registry
        SET status=?,
            last_activity=COALESCE(?, last_activity),
            error_message=COALESCE(?, error_message),
            completed_at=COALESCE(?, completed_at)
        WHERE id=?
        """,
        (
            AgentStatus(status).value,
            _to_iso(last_activity),
            error_message,
            _to_iso(completed_at),
            agent_id,
        ),
        f"update status of agent {agent_id}",
    )


def update_agent_activity(*, db_path: str, agent_id: str, last_activity: datetime) -> bool:
    return _execute_update(
        db_path,
        "UPDATE agent_registry SET last_activity=? WHERE id=?",
        (_to_iso(last_activity), agent_id),
        f"update activity of agent {agent_id}",
    )


def complete_agent(*, db_path: str, agent_id: str, exit_code: int, completed_at: datetime) -> bool:
    return _execute_update(
        db_path,
        """
        UPDATE agent_registry
        SET status=?, exit_code=?, completed_at=?, last_activity=?
        WHERE id=?
        """,
        (AgentStatus.COMPLETED.value, exit_code, _to_iso(completed_at), _to_iso(completed_at), agent_id),
        f"complete agent {agent_id}",
    )


def update_agent_budget(
    *,
    db_path: str,
    agent_id: str,
    allocated_budget: Optional[float] = None,
    spent_budget: Optional[float] = None,
) -> bool:
    """Write budget fields. Raises on storage failure."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE agent_registry
            SET allocated_budget=COALESCE(?, allocated_budget),
                spent_budget=COALESCE(?, spent_budget)
            WHERE id=?
            """,
            (allocated_budget, spent_budget, agent_id),
        )
        return cursor.rowcount > 0
    finally:
        conn.close()


def update_agent_metrics(*, db_path: str, agent_id: str, tool_calls: int, tokens_used: int) -> bool:
    return _execute_update(
        db_path,
        "UPDATE agent_registry SET tool_calls=?, tokens_used=? WHERE id=?",
        (tool_calls, tokens_used, agent_id),
        f"update metrics of agent {agent_id}",
    )


def set_agent_pid(*, db_path: str, agent_id: str, pid: int) -> bool:
    return _execute_update(
        db_path,
        "UPDATE agent_registry SET pid=? WHERE id=?",
        (pid, agent_id),
        f"set pid of agent {agent_id}",
    )


# ============================================================================
# DELETION AND CLEANUP
# ============================================================================


def delete_agent(*, db_path: str, agent_id: str) -> bool:
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        return conn.execute("DELETE FROM agent_registry WHERE id=?", (agent_id,)).rowcount > 0
    finally:
        conn.close()


def delete_agents(*, db_path: str, agent_ids: Iterable[str]) -> int:
    ids = list(agent_ids)
    if not ids:
        return 0
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        conn.execute("BEGIN")
        deleted = 0
        for agent_id in ids:
            deleted += conn.execute("DELETE FROM agent_registry WHERE id=?", (agent_id,)).rowcount
        conn.execute("COMMIT")
        return deleted
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def delete_all_agents(*, db_path: str) -> int:
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        return conn.execute("DELETE FROM agent_registry").rowcount
    finally:
        conn.close()


def cleanup_stale_agents(*, db_path: str, max_age_seconds: float, now: Optional[datetime] = None) -> int:
    """Delete records (any status) whose last activity is older than max_age_seconds."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        cutoff = (now or datetime.now()) - timedelta(seconds=max_age_seconds)
        result = conn.execute(
            "DELETE FROM agent_registry WHERE last_activity < ?",
            (cutoff.isoformat(),),
        )
        return result.rowcount
    finally:
        conn.close()


def cleanup_garbage_agents(
    *,
    db_path: str,
    orphan_max_age_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete garbage records.

    Garbage is a record whose name is a tool identifier (false-positive
    detection) or, when orphan_max_age_seconds is given, a live record with
    no session path spawned longer ago than that.
    """
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        rows = conn.execute("SELECT id, name FROM agent_registry").fetchall()
        garbage = {row['id'] for row in rows if is_tool_name(row['name'])}
        if orphan_max_age_seconds is not None:
            cutoff = (now or datetime.now()) - timedelta(seconds=orphan_max_age_seconds)
            live = [status.value for status in LIVE_STATUSES]
            placeholders = ','.join('?' * len(live))
            orphans = conn.execute(
                f"""
                SELECT id FROM agent_registry
                WHERE session_path IS NULL
                  AND spawned_at < ?
                  AND status IN ({placeholders})
                """,
                (cutoff.isoformat(), *live),
            ).fetchall()
            garbage.update(row['id'] for row in orphans)
    finally:
        conn.close()
    return delete_agents(db_path=db_path, agent_ids=sorted(garbage))


def find_agent_by_session(*, db_path: str, session_id: str) -> Optional[AgentRecord]:
    """Most recent agent whose session path is (or contains) the session id."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        row = conn.execute(
            """
            SELECT * FROM agent_registry
            WHERE session_path = ? OR instr(session_path, ?) > 0
            ORDER BY (session_path = ?) DESC, spawned_at DESC
            LIMIT 1
            """,
            (session_id, session_id, session_id),
        ).fetchone()
        return _row_to_record(row) if row else None
    finally:
        conn.close()


# ============================================================================
# DETAILED TOOL USAGE
# ============================================================================


def record_detailed_tool_usage(
    *,
    db_path: str,
    session_id: str,
    tool_name: str,
    tool_input: Optional[str] = None,
    tool_result_preview: Optional[str] = None,
    success: bool = True,
    duration_ms: Optional[int] = None,
    token_cost: Optional[int] = None,
) -> int:
    """Append one tool usage row. Returns the new row id."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO tool_usage_detailed (
              session_id, tool_name, tool_input, tool_result_preview,
              success, duration_ms, token_cost, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                tool_name,
                tool_input,
                tool_result_preview,
                1 if success else 0,
                duration_ms,
                token_cost,
                datetime.now().isoformat(),
            ),
        )
        return cursor.lastrowid
    finally:
        conn.close()


def get_detailed_tool_usage(
    *,
    db_path: str,
    session_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Most recent tool usage rows first."""
    db_path = ensure_db(db_path)
    conn = _connect(db_path)
    try:
        if session_id:
            rows = conn.execute(
                "SELECT * FROM tool_usage_detailed WHERE session_id=? ORDER BY id DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM tool_usage_detailed ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        usage = []
        for row in rows:
            entry = dict(row)
            entry['success'] = bool(entry['success'])
            usage.append(entry)
        return usage
    finally:
        conn.close()
