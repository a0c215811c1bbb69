"""
Fleet Store
===========

Database abstraction over SQLite (default) and PostgreSQL. Every public
mutation in the fleet core runs inside one ``transaction()`` so the store
gives single-mutation isolation.
"""

import json
import os
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any

import psycopg2
import psycopg2.extras

logger = logging.getLogger(__name__)


def parse_json_field(value):
    """Parse JSON field handling both string (SQLite) and dict (PostgreSQL JSONB)."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS teams (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        name TEXT NOT NULL,
        slug TEXT NOT NULL,
        mission TEXT DEFAULT '',
        created_at TEXT NOT NULL,
        UNIQUE (org_id, slug)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        soul TEXT,
        team_id TEXT,
        status TEXT NOT NULL DEFAULT 'offline',
        session_key TEXT DEFAULT '',
        current_task_id TEXT,
        container_id TEXT,
        last_heartbeat TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (org_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'inbox',
        team_id TEXT,
        assignee_ids TEXT DEFAULT '[]',
        assigned_to TEXT,
        priority INTEGER,
        output TEXT,
        mission_id TEXT,
        proposal_id TEXT,
        parent_task_id TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proposals (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        task_id TEXT,
        agent_id TEXT NOT NULL,
        team_id TEXT,
        action TEXT NOT NULL,
        params TEXT DEFAULT '{}',
        rationale TEXT NOT NULL,
        cost DOUBLE PRECISION,
        confidence DOUBLE PRECISION,
        status TEXT NOT NULL DEFAULT 'pending',
        mission_id TEXT,
        reason TEXT,
        created_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS policies (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        team_id TEXT,
        action_type TEXT NOT NULL,
        mode TEXT NOT NULL DEFAULT 'manual',
        max_cost DOUBLE PRECISION,
        min_confidence DOUBLE PRECISION
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        from_agent_id TEXT,
        content TEXT NOT NULL,
        task_id TEXT,
        depth INTEGER NOT NULL DEFAULT 0,
        timestamp DOUBLE PRECISION NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activities (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        agent_id TEXT,
        message TEXT NOT NULL,
        payload TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_org_status ON tasks(org_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_agents_org ON agents(org_id)",
    "CREATE INDEX IF NOT EXISTS idx_proposals_org_status ON proposals(org_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_policies_lookup ON policies(org_id, action_type)",
    "CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_activities_org ON activities(org_id, timestamp)",
]


class DatabaseConnection:
    """
    Database abstraction layer supporting PostgreSQL and SQLite.

    Queries are written with ``%s`` placeholders and rewritten for SQLite.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize database connection.

        Config should have:
        - type: 'postgresql' or 'sqlite'
        - For PostgreSQL: host, port, name, user, password (or password_env)
        - For SQLite: path
        """
        self.config = config
        self.db_type = config.get('type', 'sqlite')
        if self.db_type == 'sqlite':
            path = Path(self.config.get('path', 'data/fleet.db'))
            path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_connection(self):
        """Get a database connection; commits on success, rolls back on error."""
        if self.db_type == 'postgresql':
            conn = psycopg2.connect(
                host=self.config.get('host', 'localhost'),
                port=self.config.get('port', 5432),
                dbname=self.config.get('name', 'fleet'),
                user=self.config.get('user', 'fleet'),
                password=self._get_password(),
                cursor_factory=psycopg2.extras.RealDictCursor
            )
        else:
            conn = sqlite3.connect(
                self.config.get('path', 'data/fleet.db'),
                timeout=self.config.get('busy_timeout', 30)
            )
            conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """
        Yield a cursor inside a single write transaction.

        On SQLite the write lock is taken up front (BEGIN IMMEDIATE) so a
        read-then-write sequence cannot interleave with another writer.
        """
        with self.get_connection() as conn:
            if self.db_type == 'sqlite':
                conn.execute("BEGIN IMMEDIATE")
            yield Cursor(conn.cursor(), self.db_type)

    def _get_password(self) -> str:
        """Get database password from config or environment."""
        if 'password' in self.config:
            return self.config['password']

        password_env = self.config.get('password_env', 'DB_PASSWORD')
        return os.environ.get(password_env, '')

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Run a read query and return all rows as dicts."""
        with self.get_connection() as conn:
            cursor = Cursor(conn.cursor(), self.db_type)
            cursor.execute(query, params)
            return cursor.fetchall()

    def execute_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        """Run a read query and return the first row."""
        with self.get_connection() as conn:
            cursor = Cursor(conn.cursor(), self.db_type)
            cursor.execute(query, params)
            return cursor.fetchone()

    @property
    def for_update(self) -> str:
        """Row-lock suffix for SELECTs inside a transaction."""
        return ' FOR UPDATE' if self.db_type == 'postgresql' else ''

    def init_schema(self) -> None:
        """Create tables and indexes if they are missing."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            for statement in SCHEMA:
                cursor.execute(statement)
        logger.info(f"Fleet schema ready ({self.db_type})")


class Cursor:
    """Thin cursor wrapper: placeholder rewriting and dict rows."""

    def __init__(self, cursor, db_type: str):
        self._cursor = cursor
        self.db_type = db_type

    def execute(self, query: str, params: tuple = ()) -> None:
        if self.db_type == 'sqlite':
            query = query.replace('%s', '?')
        self._cursor.execute(query, tuple(params))

    def fetchone(self) -> Optional[Dict[str, Any]]:
        row = self._cursor.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount
