"""
Chat Channel Router
===================

Append-only message log partitioned by channel id. Channel ids are plain
strings: ``general``, ``team-<teamId>``, ``task-<taskId>``.
"""

import time
import uuid
import logging
from typing import Optional, List

from .db import DatabaseConnection, Cursor
from .errors import AuthorizationError
from .models import Message

logger = logging.getLogger(__name__)


class ChatRouter:
    """Posts and fetches channel messages."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def _next_timestamp(self, cursor: Cursor, org_id: str, channel_id: str) -> float:
        """
        Stamp a message while the write lock is held.

        Stamps are strictly increasing per channel across every writer, and
        commit order matches stamp order, so a reader cursor never skips.
        """
        if cursor.db_type == 'postgresql':
            cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{org_id}:{channel_id}",)
            )
        cursor.execute(
            "SELECT MAX(timestamp) AS latest FROM messages WHERE org_id = %s AND channel_id = %s",
            (org_id, channel_id)
        )
        row = cursor.fetchone()
        latest = float(row['latest']) if row and row['latest'] is not None else 0.0
        return max(time.time(), latest + 1e-6)

    def send(
        self,
        org_id: str,
        channel_id: str,
        content: str,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        depth: int = 0,
        cursor: Optional[Cursor] = None
    ) -> Message:
        """
        Append a message to a channel.

        Args:
            agent_id: Authoring agent; None for a human sender
            depth: Reply-chain depth, must be >= 0
            cursor: Write inside an existing transaction
        """
        if depth < 0:
            raise ValueError(f"Message depth must be >= 0, got {depth}")

        message = Message(
            id=str(uuid.uuid4()),
            org_id=org_id,
            channel_id=channel_id,
            content=content,
            from_agent_id=agent_id,
            task_id=task_id,
            depth=depth
        )

        if cursor is not None:
            self._insert(cursor, message)
        else:
            with self.db.transaction() as cur:
                self._insert(cur, message)

        logger.debug(f"[{channel_id}] message {message.id} (depth {depth})")
        return message

    def _insert(self, cursor: Cursor, message: Message) -> None:
        if message.from_agent_id:
            cursor.execute(
                "SELECT org_id FROM agents WHERE id = %s",
                (message.from_agent_id,)
            )
            row = cursor.fetchone()
            if not row or row['org_id'] != message.org_id:
                raise AuthorizationError(f"Unauthorized agent {message.from_agent_id}")

        message.timestamp = self._next_timestamp(cursor, message.org_id, message.channel_id)

        cursor.execute("""
            INSERT INTO messages
            (id, org_id, channel_id, from_agent_id, content, task_id, depth, timestamp)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            message.id, message.org_id, message.channel_id, message.from_agent_id,
            message.content, message.task_id, message.depth, message.timestamp
        ))

    def list(self, org_id: str, channel_id: str, limit: int = 50) -> List[Message]:
        """Latest messages of a channel, newest first."""
        rows = self.db.execute("""
            SELECT * FROM messages
            WHERE org_id = %s AND channel_id = %s
            ORDER BY timestamp DESC
            LIMIT %s
        """, (org_id, channel_id, limit))
        return [self._row_to_message(row) for row in rows]

    def list_recent(
        self,
        org_id: str,
        channel_id: str,
        after: float,
        limit: int = 20
    ) -> List[Message]:
        """Messages strictly newer than ``after``, oldest first."""
        rows = self.db.execute("""
            SELECT * FROM messages
            WHERE org_id = %s AND channel_id = %s AND timestamp > %s
            ORDER BY timestamp ASC
            LIMIT %s
        """, (org_id, channel_id, after, limit))
        return [self._row_to_message(row) for row in rows]

    def _row_to_message(self, row) -> Message:
        return Message(
            id=row['id'],
            org_id=row['org_id'],
            channel_id=row['channel_id'],
            content=row['content'],
            from_agent_id=row['from_agent_id'],
            task_id=row['task_id'],
            depth=int(row['depth'] or 0),
            timestamp=float(row['timestamp'])
        )
