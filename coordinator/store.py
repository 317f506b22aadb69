"""
Relay — Coordinator State Store

Persistence for runs, agent and workflow definitions, and the execution
event log. Two implementations of one interface:

  - MemoryStore: dict-backed, for tests and single-process use
  - SQLiteStore: single-file SQLite (WAL, JSON columns); runs survive a
    process restart, so a paused run can be resumed by another worker

Both copy in and out: mutating a Run fetched from (or written to) the
store has no effect until it is written back with put_run().
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from coordinator.types import ExecutionEvent, Run, RunStatus, new_id


class RunStore(ABC):
    """Storage interface the coordinator and the built-in tools rely on."""

    # ─── Runs ────────────────────────────────────────────────────────
    @abstractmethod
    def put_run(self, run: Run) -> None: ...

    @abstractmethod
    def get_run(self, run_id: str) -> Run | None: ...

    @abstractmethod
    def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[Run]: ...

    # ─── Definitions ─────────────────────────────────────────────────
    @abstractmethod
    def put_definition(self, kind: str, record: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_definition(self, kind: str, def_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def list_definitions(self, kind: str) -> list[dict[str, Any]]: ...

    @abstractmethod
    def delete_definition(self, kind: str, def_id: str) -> bool: ...

    # ─── Execution events ────────────────────────────────────────────
    @abstractmethod
    def append_event(self, run_id: str, event_type: str,
                     payload: dict[str, Any] | None = None) -> str: ...

    @abstractmethod
    def get_events(self, run_id: str) -> list[ExecutionEvent]: ...

    @abstractmethod
    def transaction(self) -> Iterator[None]:
        """
        Group writes so they land together or not at all:

            with store.transaction():
                store.put_run(run)
                store.append_event(run.id, "RunCompleted")
        """

    def close(self) -> None:
        pass

    # Convenience wrappers over the definition table

    def put_agent(self, agent: dict[str, Any]) -> None:
        self.put_definition("agent", agent)

    def get_agent(self, agent_id: str) -> dict[str, Any] | None:
        return self.get_definition("agent", agent_id)

    def list_agents(self) -> list[dict[str, Any]]:
        return self.list_definitions("agent")

    def delete_agent(self, agent_id: str) -> bool:
        return self.delete_definition("agent", agent_id)

    def put_workflow(self, workflow: dict[str, Any]) -> None:
        self.put_definition("workflow", workflow)

    def get_workflow(self, workflow_id: str) -> dict[str, Any] | None:
        return self.get_definition("workflow", workflow_id)

    def list_workflows(self) -> list[dict[str, Any]]:
        return self.list_definitions("workflow")

    def delete_workflow(self, workflow_id: str) -> bool:
        return self.delete_definition("workflow", workflow_id)

    def find_stuck_runs(self, max_running_seconds: int = 3600) -> list[Run]:
        """
        Runs left in RUNNING without an update for longer than the cutoff.
        Usually a worker that died mid-execution.
        """
        cutoff = time.time() - max_running_seconds
        return [
            r for r in self.list_runs(status=RunStatus.RUNNING, limit=10_000)
            if r.updated_at < cutoff
        ]

    def stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for r in self.list_runs(limit=1_000_000):
            counts[r.status.value] = counts.get(r.status.value, 0) + 1
        return {
            "runs": counts,
            "agents": len(self.list_agents()),
            "workflows": len(self.list_workflows()),
        }


# ═══════════════════════════════════════════════════════════════════
# In-memory store
# ═══════════════════════════════════════════════════════════════════

class MemoryStore(RunStore):
    """Dict-backed store. Thread-safe; everything is deep-copied in and out."""

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: dict[str, dict[str, Any]] = {}
        self._defs: dict[str, dict[str, dict[str, Any]]] = {}
        self._events: list[ExecutionEvent] = []

    def put_run(self, run: Run) -> None:
        run.updated_at = time.time()
        data = copy.deepcopy(run.to_dict())
        with self._lock:
            self._runs[run.id] = data

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            data = self._runs.get(run_id)
            return Run.from_dict(copy.deepcopy(data)) if data else None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        # Stored values are replaced, never mutated, so shallow snapshots
        # are enough to roll back.
        with self._lock:
            runs = dict(self._runs)
            defs = {kind: dict(records) for kind, records in self._defs.items()}
            events = list(self._events)
            try:
                yield
            except BaseException:
                self._runs, self._defs, self._events = runs, defs, events
                raise

    def list_runs(self, graph_id=None, status=None, limit=100) -> list[Run]:
        with self._lock:
            rows = [copy.deepcopy(d) for d in self._runs.values()]
        if graph_id:
            rows = [d for d in rows if d.get("graph_id") == graph_id]
        if status:
            rows = [d for d in rows if d.get("status") == RunStatus(status).value]
        rows.reverse()
        rows.sort(key=lambda d: d.get("started_at") or 0.0, reverse=True)
        return [Run.from_dict(d) for d in rows[:limit]]

    def put_definition(self, kind, record) -> None:
        with self._lock:
            self._defs.setdefault(kind, {})[record["id"]] = copy.deepcopy(record)

    def get_definition(self, kind, def_id):
        with self._lock:
            record = self._defs.get(kind, {}).get(def_id)
            return copy.deepcopy(record) if record else None

    def list_definitions(self, kind):
        with self._lock:
            return [copy.deepcopy(r) for r in self._defs.get(kind, {}).values()]

    def delete_definition(self, kind, def_id) -> bool:
        with self._lock:
            return self._defs.get(kind, {}).pop(def_id, None) is not None

    def append_event(self, run_id, event_type, payload=None) -> str:
        event = ExecutionEvent(
            id=new_id("evt"), run_id=run_id, type=str(event_type),
            payload=copy.deepcopy(payload),
        )
        with self._lock:
            self._events.append(event)
        return event.id

    def get_events(self, run_id) -> list[ExecutionEvent]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._events if e.run_id == run_id]


# ═══════════════════════════════════════════════════════════════════
# SQLite store
# ═══════════════════════════════════════════════════════════════════

class SQLiteStore(RunStore):
    """SQLite-backed store. One connection shared across threads under a lock."""

    def __init__(self, db_path: str | Path = "relay.db"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._tx_depth = 0
        self._create_tables()

    def _commit(self):
        # Inside transaction() the outermost block commits
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._tx_depth == 0:
                self.conn.execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.commit()

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    graph_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    finished_at REAL,
                    retry_of TEXT,
                    output TEXT,
                    trail TEXT NOT NULL DEFAULT '[]',
                    initial_input TEXT,
                    cursor TEXT,
                    tool_results TEXT NOT NULL DEFAULT '[]',
                    graph_snapshot TEXT NOT NULL DEFAULT '{}',
                    agents_snapshot TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS definitions (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (kind, id)
                );

                CREATE TABLE IF NOT EXISTS execution_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    run_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    payload TEXT,
                    created_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
                CREATE INDEX IF NOT EXISTS idx_runs_graph ON runs(graph_id);
                CREATE INDEX IF NOT EXISTS idx_events_run ON execution_events(run_id);
            """)
            self._commit()

    # ─── Runs ────────────────────────────────────────────────────────

    def put_run(self, run: Run) -> None:
        run.updated_at = time.time()
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO runs
                (id, graph_id, status, started_at, updated_at, finished_at,
                 retry_of, output, trail, initial_input, cursor,
                 tool_results, graph_snapshot, agents_snapshot)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run.id, run.graph_id, run.status.value,
                run.started_at, run.updated_at, run.finished_at, run.retry_of,
                json.dumps(run.output) if run.output is not None else None,
                json.dumps([s.to_dict() for s in run.trail]),
                json.dumps(run.initial_input),
                json.dumps(run.cursor.to_dict()) if run.cursor else None,
                json.dumps(run.tool_results),
                json.dumps(run.graph_snapshot),
                json.dumps(run.agents_snapshot),
            ))
            self._commit()

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, graph_id=None, status=None, limit=100) -> list[Run]:
        query = "SELECT * FROM runs WHERE 1=1"
        params: list[Any] = []
        if graph_id:
            query += " AND graph_id = ?"
            params.append(graph_id)
        if status:
            query += " AND status = ?"
            params.append(RunStatus(status).value)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_run(r) for r in rows]

    def _row_to_run(self, row) -> Run:
        return Run.from_dict({
            "id": row["id"],
            "graph_id": row["graph_id"],
            "status": row["status"],
            "started_at": row["started_at"],
            "updated_at": row["updated_at"],
            "finished_at": row["finished_at"],
            "retry_of": row["retry_of"],
            "output": json.loads(row["output"]) if row["output"] else None,
            "trail": json.loads(row["trail"]),
            "initial_input": json.loads(row["initial_input"]) if row["initial_input"] else None,
            "cursor": json.loads(row["cursor"]) if row["cursor"] else None,
            "tool_results": json.loads(row["tool_results"]),
            "graph_snapshot": json.loads(row["graph_snapshot"]),
            "agents_snapshot": json.loads(row["agents_snapshot"]),
        })

    # ─── Definitions ─────────────────────────────────────────────────

    def put_definition(self, kind, record) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO definitions (kind, id, body, updated_at) VALUES (?, ?, ?, ?)",
                (kind, record["id"], json.dumps(record), time.time()),
            )
            self._commit()

    def get_definition(self, kind, def_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT body FROM definitions WHERE kind = ? AND id = ?", (kind, def_id)
            ).fetchone()
        return json.loads(row["body"]) if row else None

    def list_definitions(self, kind):
        with self._lock:
            rows = self.conn.execute(
                "SELECT body FROM definitions WHERE kind = ? ORDER BY rowid", (kind,)
            ).fetchall()
        return [json.loads(r["body"]) for r in rows]

    def delete_definition(self, kind, def_id) -> bool:
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM definitions WHERE kind = ? AND id = ?", (kind, def_id)
            )
            self._commit()
        return cur.rowcount > 0

    # ─── Execution events ────────────────────────────────────────────

    def append_event(self, run_id, event_type, payload=None) -> str:
        event_id = new_id("evt")
        with self._lock:
            self.conn.execute("""
                INSERT INTO execution_events (id, run_id, type, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                event_id, run_id, str(event_type),
                json.dumps(payload, default=str) if payload is not None else None,
                time.time(),
            ))
            self._commit()
        return event_id

    def get_events(self, run_id) -> list[ExecutionEvent]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM execution_events WHERE run_id = ? ORDER BY seq", (run_id,)
            ).fetchall()
        return [
            ExecutionEvent(
                id=r["id"],
                run_id=r["run_id"],
                type=r["type"],
                payload=json.loads(r["payload"]) if r["payload"] else None,
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            runs = self.conn.execute(
                "SELECT status, COUNT(*) as cnt FROM runs GROUP BY status"
            ).fetchall()
            defs = self.conn.execute(
                "SELECT kind, COUNT(*) as cnt FROM definitions GROUP BY kind"
            ).fetchall()
        by_kind = {r["kind"]: r["cnt"] for r in defs}
        return {
            "runs": {r["status"]: r["cnt"] for r in runs},
            "agents": by_kind.get("agent", 0),
            "workflows": by_kind.get("workflow", 0),
        }

    def close(self):
        with self._lock:
            self.conn.close()


def create_store(db_path: str = "") -> RunStore:
    """SQLiteStore when a path is configured, else MemoryStore."""
    if db_path:
        return SQLiteStore(db_path)
    return MemoryStore()
