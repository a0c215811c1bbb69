"""
Task Registry
=============

Owns the mission state machine and the claim protocol.

Status flow::

    inbox -> assigned / in_progress -> review / done
                      \\-> blocked

``claim`` is a compare-and-swap: inside one transaction the task row is
read (row-locked on PostgreSQL, write-locked via BEGIN IMMEDIATE on SQLite)
and moved out of ``inbox`` with a conditional UPDATE. Two concurrent
claimants can never both win.
"""

import json
import uuid
import logging
from typing import Optional, List, Callable

from .activities import ActivityLog
from .agents import AgentDirectory
from .db import DatabaseConnection, Cursor, parse_json_field
from .errors import AuthorizationError, NotFoundError, InvalidStatusError
from .models import (
    Task, TaskStatus, TASK_STATUSES,
    TaskCreated, TaskAssigned, TaskCompleted,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, str, str], None]


class TaskRegistry:
    """Missions per organization."""

    def __init__(self, db: DatabaseConnection, agents: AgentDirectory, activities: ActivityLog):
        self.db = db
        self.agents = agents
        self.activities = activities
        self._listeners: List[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        """Register ``listener(org_id, task_id, new_status)`` for status changes."""
        self._listeners.append(listener)

    # ==================== Creation ====================

    def create(
        self,
        org_id: str,
        title: str,
        description: str,
        team_id: Optional[str] = None,
        priority: Optional[int] = None,
        status: str = TaskStatus.INBOX.value,
        assignee_id: Optional[str] = None,
        mission_id: Optional[str] = None,
        created_by: Optional[str] = None,
        proposal_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        cursor: Optional[Cursor] = None
    ) -> Task:
        """
        Create a task.

        A task created with an assignee never sits in ``inbox``; it starts
        as ``assigned`` unless another status is given.
        """
        if status not in TASK_STATUSES:
            raise InvalidStatusError(f"Unknown task status: {status}")
        if priority is not None and not 1 <= priority <= 10:
            raise ValueError(f"Priority must be between 1 and 10, got {priority}")
        if assignee_id and status == TaskStatus.INBOX.value:
            status = TaskStatus.ASSIGNED.value

        task = Task(
            id=str(uuid.uuid4()),
            org_id=org_id,
            title=title,
            description=description,
            status=status,
            team_id=team_id,
            assignee_ids=[assignee_id] if assignee_id else [],
            assigned_to=assignee_id,
            priority=priority,
            mission_id=mission_id,
            proposal_id=proposal_id,
            parent_task_id=parent_task_id,
            created_by=created_by
        )

        if cursor is not None:
            self._create(cursor, task)
        else:
            with self.db.transaction() as cur:
                self._create(cur, task)

        logger.info(f"Created task {task.id} '{title}' [{status}] in org {org_id}")
        return task

    def _create(self, cursor: Cursor, task: Task) -> None:
        if task.assigned_to:
            self.agents.load(cursor, task.org_id, task.assigned_to)
        if task.team_id:
            self.agents.check_team(cursor, task.org_id, task.team_id)

        cursor.execute("""
            INSERT INTO tasks
            (id, org_id, title, description, status, team_id, assignee_ids, assigned_to,
             priority, output, mission_id, proposal_id, parent_task_id, created_by,
             created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            task.id, task.org_id, task.title, task.description, task.status, task.team_id,
            json.dumps(task.assignee_ids), task.assigned_to, task.priority, task.output,
            task.mission_id, task.proposal_id, task.parent_task_id, task.created_by,
            task.created_at, task.updated_at
        ))
        self.activities.log(
            task.org_id,
            TaskCreated(task_id=task.id, title=task.title),
            f"New mission: {task.title}",
            agent_id=task.created_by,
            cursor=cursor
        )

    # ==================== Claim / Assign ====================

    def claim(self, org_id: str, task_id: str, agent_id: str) -> bool:
        """
        Atomically take an inbox task.

        Returns:
            True if this agent now owns the task, False if it was not in
            the inbox (someone else won, or it was assigned directly)
        """
        with self.db.transaction() as cur:
            task = self.load(cur, org_id, task_id, lock=True)
            self.agents.load(cur, org_id, agent_id)

            if task.status != TaskStatus.INBOX.value:
                logger.debug(f"Claim of {task_id} by {agent_id} skipped: status {task.status}")
                return False

            cur.execute("""
                UPDATE tasks
                SET status = %s, assignee_ids = %s, assigned_to = %s, updated_at = %s
                WHERE id = %s AND status = %s
            """, (
                TaskStatus.IN_PROGRESS.value, json.dumps([agent_id]), agent_id,
                utcnow_iso(), task_id, TaskStatus.INBOX.value
            ))
            if cur.rowcount == 0:
                return False

            self.activities.log(
                org_id,
                TaskAssigned(task_id=task_id, agent_id=agent_id, claimed=True),
                f"Agent claimed task: {task.title}",
                agent_id=agent_id,
                cursor=cur
            )

        logger.info(f"Agent {agent_id} claimed task {task_id}")
        return True

    def assign(self, org_id: str, task_id: str, agent_id: str) -> None:
        """Human assignment. No inbox precondition; both must belong to the org."""
        with self.db.transaction() as cur:
            task = self.load(cur, org_id, task_id, lock=True)
            self.agents.load(cur, org_id, agent_id)

            cur.execute("""
                UPDATE tasks
                SET status = %s, assignee_ids = %s, assigned_to = %s, updated_at = %s
                WHERE id = %s
            """, (
                TaskStatus.ASSIGNED.value, json.dumps([agent_id]), agent_id,
                utcnow_iso(), task_id
            ))
            self.activities.log(
                org_id,
                TaskAssigned(task_id=task_id, agent_id=agent_id),
                f"Manager assigned task: {task.title}",
                agent_id=agent_id,
                cursor=cur
            )

        logger.info(f"Assigned task {task_id} to {agent_id}")

    # ==================== Transitions ====================

    def update_status(self, org_id: str, task_id: str, status: str) -> None:
        """Set a task's status, then notify status listeners."""
        if status not in TASK_STATUSES:
            raise InvalidStatusError(f"Unknown task status: {status}")

        with self.db.transaction() as cur:
            self.load(cur, org_id, task_id, lock=True)
            cur.execute(
                "UPDATE tasks SET status = %s, updated_at = %s WHERE id = %s",
                (status, utcnow_iso(), task_id)
            )

        logger.info(f"Task {task_id} -> {status}")

        for listener in self._listeners:
            try:
                listener(org_id, task_id, status)
            except Exception as e:
                logger.error(f"Status listener failed for task {task_id}: {e}", exc_info=True)

    def complete(self, org_id: str, task_id: str, agent_id: str, output: str) -> bool:
        """
        Mark a task done with its output.

        Returns:
            False if the task was already done
        """
        with self.db.transaction() as cur:
            task = self.load(cur, org_id, task_id, lock=True)
            self.agents.load(cur, org_id, agent_id)
            if task.status == TaskStatus.DONE.value:
                return False

            cur.execute("""
                UPDATE tasks SET status = %s, output = %s, updated_at = %s
                WHERE id = %s AND status != %s
            """, (TaskStatus.DONE.value, output, utcnow_iso(), task_id, TaskStatus.DONE.value))
            if cur.rowcount == 0:
                return False

            self.activities.log(
                org_id,
                TaskCompleted(task_id=task_id, output=output),
                f"Agent completed task: {task.title}",
                agent_id=agent_id,
                cursor=cur
            )

        logger.info(f"Task {task_id} completed by {agent_id}")
        return True

    # ==================== Queries ====================

    def load(self, cursor: Cursor, org_id: str, task_id: str, lock: bool = False) -> Task:
        suffix = self.db.for_update if lock else ''
        cursor.execute(f"SELECT * FROM tasks WHERE id = %s{suffix}", (task_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Task not found: {task_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Task {task_id} belongs to another organization")
        return self._row_to_task(row)

    def get(self, org_id: str, task_id: str) -> Task:
        row = self.db.execute_one("SELECT * FROM tasks WHERE id = %s", (task_id,))
        if not row:
            raise NotFoundError(f"Task not found: {task_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Task {task_id} belongs to another organization")
        return self._row_to_task(row)

    def list(
        self,
        org_id: str,
        status: Optional[str] = None,
        team_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Task]:
        """Tasks by priority (highest first), then age."""
        conditions = ["org_id = %s"]
        params = [org_id]
        if status:
            conditions.append("status = %s")
            params.append(status)
        if team_id:
            conditions.append("team_id = %s")
            params.append(team_id)
        params.append(limit)

        rows = self.db.execute(f"""
            SELECT * FROM tasks
            WHERE {' AND '.join(conditions)}
            ORDER BY COALESCE(priority, 0) DESC, created_at ASC
            LIMIT %s
        """, tuple(params))
        return [self._row_to_task(row) for row in rows]

    def find_assigned(
        self,
        org_id: str,
        agent_id: str,
        statuses: Optional[List[str]] = None
    ) -> List[Task]:
        """Tasks held by an agent, oldest first."""
        statuses = statuses or [TaskStatus.ASSIGNED.value, TaskStatus.IN_PROGRESS.value]
        placeholders = ', '.join(['%s'] * len(statuses))
        rows = self.db.execute(f"""
            SELECT * FROM tasks
            WHERE org_id = %s AND status IN ({placeholders})
            ORDER BY created_at ASC
        """, (org_id, *statuses))
        tasks = [self._row_to_task(row) for row in rows]
        return [t for t in tasks if t.is_assigned_to(agent_id)]

    def delete(self, org_id: str, task_id: str) -> None:
        with self.db.transaction() as cur:
            self.load(cur, org_id, task_id)
            cur.execute("DELETE FROM tasks WHERE id = %s", (task_id,))
        logger.info(f"Deleted task {task_id}")

    def _row_to_task(self, row) -> Task:
        return Task(
            id=row['id'],
            org_id=row['org_id'],
            title=row['title'],
            description=row['description'],
            status=row['status'],
            team_id=row['team_id'],
            assignee_ids=parse_json_field(row['assignee_ids']) or [],
            assigned_to=row['assigned_to'],
            priority=row['priority'],
            output=row['output'],
            mission_id=row['mission_id'],
            proposal_id=row['proposal_id'],
            parent_task_id=row['parent_task_id'],
            created_by=row['created_by'],
            created_at=str(row['created_at']),
            updated_at=str(row['updated_at'])
        )
