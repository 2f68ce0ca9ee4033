"""
Automation tables.

Defines table names and DDL for schedules, runs, workflows, workflow runs,
the user/agent/prompt directory, and conversations.

Architecture:
    ::

        Table Registry (TABLES):
        ┌────────────────────────────────────────────────────────────┐
        │ schedules      → autorun_schedules                         │
        │ runs           → autorun_runs          (agent run history) │
        │ workflows      → autorun_workflows     (nodes/edges JSON)  │
        │ workflow_runs  → autorun_workflow_runs                     │
        │ users          → autorun_users                             │
        │ agents         → autorun_agents                            │
        │ prompts        → autorun_prompts                           │
        │ conversations  → autorun_conversations                     │
        │ messages       → autorun_messages                          │
        └────────────────────────────────────────────────────────────┘

        Runs are never deleted: the tables double as the audit trail.

Tags:
    schema, ddl, sqlite, autorun

Doc-Types:
    - Database Schema Reference
"""

from __future__ import annotations

import sqlite3

TABLES = {
    "schedules": "autorun_schedules",
    "runs": "autorun_runs",
    "workflows": "autorun_workflows",
    "workflow_runs": "autorun_workflow_runs",
    "users": "autorun_users",
    "agents": "autorun_agents",
    "prompts": "autorun_prompts",
    "conversations": "autorun_conversations",
    "messages": "autorun_messages",
}

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS autorun_schedules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    target_type TEXT NOT NULL DEFAULT 'agent',
    agent_id TEXT,
    workflow_id TEXT,
    prompt TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL DEFAULT 'recurring',
    cron_expression TEXT,
    run_at TEXT,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    enabled INTEGER NOT NULL DEFAULT 1,
    selected_tools TEXT,
    conversation_id TEXT,
    last_run_at TEXT,
    last_run_status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_autorun_schedules_user ON autorun_schedules(user_id);
CREATE INDEX IF NOT EXISTS idx_autorun_schedules_enabled ON autorun_schedules(enabled, kind);

CREATE TABLE IF NOT EXISTS autorun_runs (
    id TEXT PRIMARY KEY,
    schedule_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    conversation_id TEXT,
    run_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    error TEXT,
    started_at TEXT,
    finished_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_autorun_runs_schedule ON autorun_runs(schedule_id, run_at);
CREATE INDEX IF NOT EXISTS idx_autorun_runs_user ON autorun_runs(user_id, run_at);

CREATE TABLE IF NOT EXISTS autorun_workflows (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    nodes TEXT NOT NULL DEFAULT '[]',
    edges TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS autorun_workflow_runs (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    schedule_id TEXT,
    conversation_id TEXT,
    run_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    error TEXT,
    step_outputs TEXT NOT NULL DEFAULT '[]',
    started_at TEXT,
    finished_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_autorun_workflow_runs_wf ON autorun_workflow_runs(workflow_id, run_at);

CREATE TABLE IF NOT EXISTS autorun_users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    username TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'USER'
);

CREATE TABLE IF NOT EXISTS autorun_agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    author_id TEXT NOT NULL DEFAULT '',
    instructions TEXT NOT NULL DEFAULT '',
    tools TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS autorun_prompts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    template TEXT NOT NULL DEFAULT '',
    author_id TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS autorun_conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    agent_id TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS autorun_messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    parent_message_id TEXT,
    sender TEXT NOT NULL DEFAULT '',
    is_created_by_user INTEGER NOT NULL DEFAULT 0,
    text TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '[]',
    agent_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_autorun_messages_conv ON autorun_messages(conversation_id, created_at);
"""


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create all automation tables (idempotent)."""
    conn.executescript(SCHEMA_DDL)
    conn.commit()


def connect(path: str = ":memory:") -> sqlite3.Connection:
    """Open a SQLite connection with the schema applied.

    ``check_same_thread`` is off because the FastAPI test client and the
    worker tasks may touch the connection from different threads.
    """
    conn = sqlite3.connect(path, check_same_thread=False)
    apply_schema(conn)
    return conn
