import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import os

from workflow_engine.config import BASE_DIR
from workflow_engine.errors import DbError

DB_PATH = Path(os.getenv("WORKFLOW_DB_PATH", BASE_DIR / "workflow.db"))
BUSY_TIMEOUT_SECONDS = 10.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id INTEGER NOT NULL,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id),
    role TEXT NOT NULL DEFAULT 'member',
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS task_types (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    milestone_id INTEGER,
    title TEXT NOT NULL,
    description TEXT,
    color TEXT,
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    type_id INTEGER NOT NULL REFERENCES task_types(id),
    title TEXT NOT NULL,
    description TEXT,
    priority INTEGER NOT NULL CHECK (priority BETWEEN 1 AND 5),
    status TEXT NOT NULL DEFAULT 'available'
        CHECK (status IN ('available', 'claimed', 'completed')),
    created_by INTEGER NOT NULL,
    claimed_by INTEGER,
    claimed_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    card_id INTEGER REFERENCES cards(id) ON DELETE SET NULL,
    CHECK ((status = 'claimed') = (claimed_by IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_tasks_card ON tasks(card_id);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    project_id INTEGER NOT NULL,
    actor_user_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    version INTEGER NOT NULL,
    occurred_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    started_at TEXT NOT NULL,
    ended_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_work_sessions_open
    ON work_sessions(user_id, task_id) WHERE ended_at IS NULL;

CREATE TABLE IF NOT EXISTS workflows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id INTEGER NOT NULL,
    project_id INTEGER REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    created_by INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id INTEGER NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    goal TEXT,
    resource_type TEXT NOT NULL CHECK (resource_type IN ('task', 'card')),
    task_type_id INTEGER,
    to_state TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    org_id INTEGER NOT NULL,
    project_id INTEGER REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    type_id INTEGER NOT NULL,
    priority INTEGER NOT NULL DEFAULT 3,
    created_by INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rule_templates (
    rule_id INTEGER NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
    template_id INTEGER NOT NULL REFERENCES task_templates(id) ON DELETE CASCADE,
    execution_order INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (rule_id, template_id)
);

CREATE TABLE IF NOT EXISTS rule_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
    origin_type TEXT NOT NULL,
    origin_id INTEGER NOT NULL,
    outcome TEXT NOT NULL CHECK (outcome IN ('applied', 'suppressed')),
    suppression_reason TEXT,
    created_count INTEGER NOT NULL DEFAULT 0,
    user_id INTEGER,
    created_at TEXT NOT NULL,

    UNIQUE(rule_id, origin_type, origin_id)
);
"""

TASK_COLUMNS = """
    t.id, t.project_id, t.type_id, t.title, t.description, t.priority,
    t.status, t.created_by, t.claimed_by, t.claimed_at, t.completed_at,
    t.created_at, t.version, t.card_id,
    EXISTS (
        SELECT 1 FROM work_sessions ws
        WHERE ws.task_id = t.id AND ws.ended_at IS NULL
    ) AS is_ongoing
"""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection():
    # autocommit mode; writes go through transaction() / savepoint()
    conn = sqlite3.connect(DB_PATH, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db():
    conn = get_connection()
    try:
        # readers never block the single writer
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
    finally:
        conn.close()


@contextmanager
def transaction(conn):
    # IMMEDIATE takes the write lock up front so conditional updates
    # serialize instead of failing on a lock upgrade
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        # some errors make SQLite roll back on its own
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


@contextmanager
def savepoint(conn, name: str):
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except BaseException:
        conn.execute(f"ROLLBACK TO {name}")
        conn.execute(f"RELEASE {name}")
        raise
    conn.execute(f"RELEASE {name}")


@contextmanager
def storage_errors():
    try:
        yield
    except sqlite3.Error as exc:
        raise DbError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def fetch_task(conn, task_id: int):
    cur = conn.execute(f"SELECT {TASK_COLUMNS} FROM tasks t WHERE t.id = ?", (task_id,))
    return cur.fetchone()


def task_type_in_project(conn, type_id: int, project_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM task_types WHERE id = ? AND project_id = ?",
        (type_id, project_id),
    ).fetchone()
    return row is not None


def card_in_project(conn, card_id: int, project_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM cards WHERE id = ? AND project_id = ?",
        (card_id, project_id),
    ).fetchone()
    return row is not None


def insert_task(
    conn,
    *,
    project_id: int,
    type_id: int,
    title: str,
    description: Optional[str],
    priority: int,
    created_by: int,
    card_id: Optional[int] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO tasks (
            project_id, type_id, title, description, priority,
            created_by, card_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (project_id, type_id, title, description or None, priority, created_by, card_id, utcnow()),
    )
    return cur.lastrowid


def claim_task(conn, task_id: int, user_id: int, version: int) -> int:
    cur = conn.execute(
        """
        UPDATE tasks
        SET claimed_by = ?, claimed_at = ?, status = 'claimed', version = version + 1
        WHERE id = ? AND status = 'available' AND version = ?
        """,
        (user_id, utcnow(), task_id, version),
    )
    return cur.rowcount


def release_task(conn, task_id: int, user_id: int, version: int) -> int:
    cur = conn.execute(
        """
        UPDATE tasks
        SET claimed_by = NULL, claimed_at = NULL, status = 'available', version = version + 1
        WHERE id = ? AND status = 'claimed' AND claimed_by = ? AND version = ?
        """,
        (task_id, user_id, version),
    )
    return cur.rowcount


def complete_task(conn, task_id: int, user_id: int, version: int) -> int:
    cur = conn.execute(
        """
        UPDATE tasks
        SET claimed_by = NULL, claimed_at = NULL, status = 'completed',
            completed_at = ?, version = version + 1
        WHERE id = ? AND status = 'claimed' AND claimed_by = ? AND version = ?
        """,
        (utcnow(), task_id, user_id, version),
    )
    return cur.rowcount


def update_task_fields(conn, task_id: int, user_id: int, version: int, fields: dict) -> int:
    # column names come from a fixed whitelist in lifecycle.update
    assignments = ", ".join(f"{column} = ?" for column in fields)
    params = list(fields.values()) + [task_id, user_id, version]
    cur = conn.execute(
        f"""
        UPDATE tasks
        SET {assignments}, version = version + 1
        WHERE id = ? AND status = 'claimed' AND claimed_by = ? AND version = ?
        """,
        params,
    )
    return cur.rowcount


def append_task_event(
    conn,
    *,
    task_id: int,
    project_id: int,
    actor_user_id: int,
    event_type: str,
    from_state: Optional[str],
    to_state: str,
    version: int,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO task_events (
            task_id, project_id, actor_user_id, event_type,
            from_state, to_state, version, occurred_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (task_id, project_id, actor_user_id, event_type, from_state, to_state, version, utcnow()),
    )
    return cur.lastrowid


def load_task_events(conn, task_id: int):
    rows = conn.execute(
        """
        SELECT event_type, actor_user_id, from_state, to_state, version, occurred_at
        FROM task_events
        WHERE task_id = ?
        ORDER BY version ASC, id ASC
        """,
        (task_id,),
    ).fetchall()

    return [
        {
            "event_type": row["event_type"],
            "actor_user_id": row["actor_user_id"],
            "from_state": row["from_state"],
            "to_state": row["to_state"],
            "version": row["version"],
            "occurred_at": row["occurred_at"],
        }
        for row in rows
    ]


def start_work_session(conn, user_id: int, task_id: int) -> int:
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO work_sessions (user_id, task_id, started_at)
        VALUES (?, ?, ?)
        """,
        (user_id, task_id, utcnow()),
    )
    return cur.rowcount


def end_work_session(conn, user_id: int, task_id: int) -> int:
    cur = conn.execute(
        """
        UPDATE work_sessions
        SET ended_at = ?
        WHERE user_id = ? AND task_id = ? AND ended_at IS NULL
        """,
        (utcnow(), user_id, task_id),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Projects, users, cards
# ---------------------------------------------------------------------------

def fetch_project(conn, project_id: int):
    return conn.execute(
        "SELECT id, org_id, name FROM projects WHERE id = ?", (project_id,)
    ).fetchone()


def project_name(conn, project_id: int) -> Optional[str]:
    row = fetch_project(conn, project_id)
    return row["name"] if row else None


def user_display_name(conn, user_id: int) -> Optional[str]:
    row = conn.execute(
        "SELECT coalesce(display_name, email) AS name FROM users WHERE id = ?",
        (user_id,),
    ).fetchone()
    return row["name"] if row else None


def is_project_member(conn, project_id: int, user_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
        (project_id, user_id),
    ).fetchone()
    return row is not None


def fetch_card_with_counts(conn, card_id: int):
    return conn.execute(
        """
        SELECT
            c.id, c.project_id, c.milestone_id, c.title, c.description, c.color,
            COUNT(t.id) AS task_count,
            COUNT(CASE WHEN t.status = 'completed' THEN 1 END) AS completed_count,
            COUNT(CASE WHEN t.status = 'available' THEN 1 END) AS available_count
        FROM cards c
        LEFT JOIN tasks t ON t.card_id = c.id
        WHERE c.id = ?
        GROUP BY c.id
        """,
        (card_id,),
    ).fetchone()


def create_user(conn, email: str, display_name: Optional[str] = None) -> int:
    cur = conn.execute(
        "INSERT INTO users (email, display_name) VALUES (?, ?)", (email, display_name)
    )
    return cur.lastrowid


def create_project(conn, org_id: int, name: str) -> int:
    cur = conn.execute("INSERT INTO projects (org_id, name) VALUES (?, ?)", (org_id, name))
    return cur.lastrowid


def add_project_member(conn, project_id: int, user_id: int, role: str = "member"):
    conn.execute(
        "INSERT OR IGNORE INTO project_members (project_id, user_id, role) VALUES (?, ?, ?)",
        (project_id, user_id, role),
    )


def create_task_type(conn, project_id: int, name: str) -> int:
    cur = conn.execute(
        "INSERT INTO task_types (project_id, name) VALUES (?, ?)", (project_id, name)
    )
    return cur.lastrowid


def create_card(
    conn,
    project_id: int,
    title: str,
    created_by: int,
    description: Optional[str] = None,
    color: Optional[str] = None,
    milestone_id: Optional[int] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO cards (project_id, milestone_id, title, description, color, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (project_id, milestone_id, title, description, color, created_by, utcnow()),
    )
    return cur.lastrowid


# ---------------------------------------------------------------------------
# Workflows, rules, templates
# ---------------------------------------------------------------------------

def create_workflow(
    conn,
    org_id: int,
    name: str,
    project_id: Optional[int] = None,
    description: Optional[str] = None,
    active: bool = True,
    created_by: Optional[int] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO workflows (org_id, project_id, name, description, active, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, project_id, name, description or None, int(active), created_by, utcnow()),
    )
    return cur.lastrowid


def create_rule(
    conn,
    workflow_id: int,
    name: str,
    resource_type: str,
    to_state: str,
    task_type_id: Optional[int] = None,
    goal: Optional[str] = None,
    active: bool = True,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO rules (workflow_id, name, goal, resource_type, task_type_id, to_state, active, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (workflow_id, name, goal or None, resource_type, task_type_id, to_state, int(active), utcnow()),
    )
    return cur.lastrowid


def find_matching_rules(
    conn,
    *,
    resource_type: str,
    to_state: str,
    project_id: int,
    org_id: int,
    task_type_id: Optional[int] = None,
):
    # task_type filter only applies to task rules; an event without a type
    # matches typed and untyped rules alike
    return conn.execute(
        """
        SELECT
            r.id, r.workflow_id, r.name, r.goal, r.resource_type,
            r.task_type_id, r.to_state, r.active
        FROM rules r
        JOIN workflows w ON w.id = r.workflow_id
        WHERE r.active = 1
          AND w.active = 1
          AND r.resource_type = :resource_type
          AND r.to_state = :to_state
          AND w.org_id = :org_id
          AND (w.project_id IS NULL OR w.project_id = :project_id)
          AND (
            :resource_type != 'task'
            OR r.task_type_id IS NULL
            OR :task_type_id IS NULL
            OR r.task_type_id = :task_type_id
          )
        ORDER BY w.project_id IS NULL, w.project_id, r.id
        """,
        {
            "resource_type": resource_type,
            "to_state": to_state,
            "org_id": org_id,
            "project_id": project_id,
            "task_type_id": task_type_id,
        },
    ).fetchall()


def create_task_template(
    conn,
    org_id: int,
    name: str,
    type_id: int,
    priority: int = 3,
    description: Optional[str] = None,
    project_id: Optional[int] = None,
    created_by: Optional[int] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO task_templates (org_id, project_id, name, description, type_id, priority, created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (org_id, project_id, name, description or None, type_id, priority, created_by, utcnow()),
    )
    return cur.lastrowid


def attach_rule_template(conn, rule_id: int, template_id: int, execution_order: int = 0):
    # re-attaching only moves the template within the rule's order
    conn.execute(
        """
        INSERT INTO rule_templates (rule_id, template_id, execution_order)
        VALUES (?, ?, ?)
        ON CONFLICT (rule_id, template_id)
        DO UPDATE SET execution_order = excluded.execution_order
        """,
        (rule_id, template_id, execution_order),
    )


def templates_for_rule(conn, rule_id: int):
    return conn.execute(
        """
        SELECT
            t.id, t.org_id, t.project_id, t.name, t.description,
            t.type_id, t.priority, rt.execution_order
        FROM rule_templates rt
        JOIN task_templates t ON t.id = rt.template_id
        WHERE rt.rule_id = ?
        ORDER BY rt.execution_order, t.id
        """,
        (rule_id,),
    ).fetchall()


# ---------------------------------------------------------------------------
# Rule executions
# ---------------------------------------------------------------------------

def find_rule_execution(conn, rule_id: int, origin_type: str, origin_id: int):
    return conn.execute(
        """
        SELECT id, outcome, suppression_reason
        FROM rule_executions
        WHERE rule_id = ? AND origin_type = ? AND origin_id = ?
        LIMIT 1
        """,
        (rule_id, origin_type, origin_id),
    ).fetchone()


def insert_rule_execution(
    conn,
    *,
    rule_id: int,
    origin_type: str,
    origin_id: int,
    outcome: str,
    suppression_reason: Optional[str],
    created_count: int,
    user_id: Optional[int],
) -> int:
    """Insert one execution row.

    Raises sqlite3.IntegrityError when (rule_id, origin_type, origin_id)
    already exists; callers treat that as a duplicate evaluation.
    """
    cur = conn.execute(
        """
        INSERT INTO rule_executions (
            rule_id, origin_type, origin_id, outcome,
            suppression_reason, created_count, user_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (rule_id, origin_type, origin_id, outcome, suppression_reason, created_count, user_id, utcnow()),
    )
    return cur.lastrowid


def list_rule_executions(conn, rule_id: int, limit: int = 50, offset: int = 0):
    return conn.execute(
        """
        SELECT
            id, rule_id, origin_type, origin_id, outcome,
            suppression_reason, created_count, user_id, created_at
        FROM rule_executions
        WHERE rule_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (rule_id, limit, offset),
    ).fetchall()


def count_rule_executions(conn, rule_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM rule_executions WHERE rule_id = ?", (rule_id,)
    ).fetchone()
    return row["total"]
