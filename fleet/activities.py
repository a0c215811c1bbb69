"""
Activity Log
============

Append-only narrative of what happened to tasks, agents and proposals.
Produced by the core for audit; never read back by core logic.
"""

import json
import uuid
import logging
from dataclasses import asdict
from typing import Optional, List

from .db import DatabaseConnection, Cursor, parse_json_field
from .models import Activity, ActivityPayload, payload_from_dict, utcnow_iso

logger = logging.getLogger(__name__)


class ActivityLog:
    """Writes and lists activity entries."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def log(
        self,
        org_id: str,
        payload: ActivityPayload,
        message: str,
        agent_id: Optional[str] = None,
        cursor: Optional[Cursor] = None
    ) -> Activity:
        """Record an activity, inside ``cursor``'s transaction when given."""
        activity = Activity(
            id=str(uuid.uuid4()),
            org_id=org_id,
            message=message,
            payload=payload,
            agent_id=agent_id,
            timestamp=utcnow_iso()
        )
        query = """
            INSERT INTO activities (id, org_id, kind, agent_id, message, payload, timestamp)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            activity.id, org_id, activity.kind, agent_id, message,
            json.dumps(asdict(payload)), activity.timestamp
        )
        if cursor is not None:
            cursor.execute(query, params)
        else:
            with self.db.transaction() as cur:
                cur.execute(query, params)

        logger.debug(f"Activity [{activity.kind}] {message}")
        return activity

    def list(self, org_id: str, kind: Optional[str] = None, limit: int = 20) -> List[Activity]:
        """Most recent activities first."""
        conditions = ["org_id = %s"]
        params = [org_id]
        if kind:
            conditions.append("kind = %s")
            params.append(kind)
        params.append(limit)

        rows = self.db.execute(f"""
            SELECT * FROM activities
            WHERE {' AND '.join(conditions)}
            ORDER BY timestamp DESC
            LIMIT %s
        """, tuple(params))
        return [self._row_to_activity(row) for row in rows]

    def _row_to_activity(self, row) -> Activity:
        return Activity(
            id=row['id'],
            org_id=row['org_id'],
            message=row['message'],
            payload=payload_from_dict(parse_json_field(row['payload'])),
            agent_id=row['agent_id'],
            timestamp=str(row['timestamp'])
        )
