"""
Agent Directory
===============

Roster of agents and teams per organization: hire, self-registration,
identity lookup, heartbeat, status and soul edits.
"""

import re
import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from .db import DatabaseConnection, Cursor
from .errors import AuthorizationError, NotFoundError, InvalidStatusError, FleetError
from .models import Agent, Team, AgentStatus, AGENT_STATUSES, utcnow_iso

logger = logging.getLogger(__name__)

_UNSET = object()


def slugify(name: str) -> str:
    return re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')


class AgentDirectory:
    """Agent and team records, scoped by organization."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    # ==================== Teams ====================

    def create_team(self, org_id: str, name: str, slug: str = None, mission: str = "") -> Team:
        team = Team(
            id=str(uuid.uuid4()),
            org_id=org_id,
            name=name,
            slug=slug or slugify(name),
            mission=mission
        )
        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id FROM teams WHERE org_id = %s AND slug = %s",
                (org_id, team.slug)
            )
            if cur.fetchone():
                raise FleetError(f"Team slug already exists: {team.slug}")
            cur.execute("""
                INSERT INTO teams (id, org_id, name, slug, mission, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
            """, (team.id, org_id, team.name, team.slug, team.mission, team.created_at))

        logger.info(f"Created team {team.name} ({team.id}) in org {org_id}")
        return team

    def get_team(self, org_id: str, team_id: str) -> Team:
        row = self.db.execute_one("SELECT * FROM teams WHERE id = %s", (team_id,))
        if not row:
            raise NotFoundError(f"Team not found: {team_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Team {team_id} belongs to another organization")
        return Team(**row)

    def list_teams(self, org_id: str) -> List[Team]:
        rows = self.db.execute(
            "SELECT * FROM teams WHERE org_id = %s ORDER BY name", (org_id,)
        )
        return [Team(**row) for row in rows]

    # ==================== Agents ====================

    def hire(
        self,
        org_id: str,
        name: str,
        role: str,
        soul: Optional[str] = None,
        team_id: Optional[str] = None
    ) -> Agent:
        """Create an agent record. It stays offline until its runner connects."""
        agent = Agent(
            id=str(uuid.uuid4()),
            org_id=org_id,
            name=name,
            role=role,
            soul=soul,
            team_id=team_id,
            last_heartbeat=utcnow_iso()
        )
        with self.db.transaction() as cur:
            if team_id:
                self.check_team(cur, org_id, team_id)
            cur.execute(
                "SELECT id FROM agents WHERE org_id = %s AND name = %s",
                (org_id, name)
            )
            if cur.fetchone():
                raise FleetError(f"Agent name already taken in {org_id}: {name}")
            self._insert(cur, agent)

        logger.info(f"Hired agent {name} ({agent.id}) as {role}")
        return agent

    def register(
        self,
        org_id: str,
        name: str,
        role: str,
        session_key: str = "",
        team_id: Optional[str] = None
    ) -> Agent:
        """Self-registration: create the agent or refresh an existing one."""
        now = utcnow_iso()
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT * FROM agents WHERE org_id = %s AND name = %s{self.db.for_update}",
                (org_id, name)
            )
            row = cur.fetchone()
            if row:
                cur.execute("""
                    UPDATE agents
                    SET role = %s, session_key = %s, status = %s, last_heartbeat = %s
                    WHERE id = %s
                """, (role, session_key, AgentStatus.IDLE.value, now, row['id']))
                agent_id = row['id']
            else:
                agent = Agent(
                    id=str(uuid.uuid4()),
                    org_id=org_id,
                    name=name,
                    role=role,
                    team_id=team_id,
                    status=AgentStatus.IDLE.value,
                    session_key=session_key,
                    last_heartbeat=now
                )
                self._insert(cur, agent)
                agent_id = agent.id

        logger.info(f"Registered agent {name} ({agent_id})")
        return self.get(org_id, agent_id)

    def _insert(self, cursor: Cursor, agent: Agent) -> None:
        cursor.execute("""
            INSERT INTO agents
            (id, org_id, name, role, soul, team_id, status, session_key,
             current_task_id, container_id, last_heartbeat, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            agent.id, agent.org_id, agent.name, agent.role, agent.soul, agent.team_id,
            agent.status, agent.session_key, agent.current_task_id, agent.container_id,
            agent.last_heartbeat, agent.created_at
        ))

    def check_team(self, cursor: Cursor, org_id: str, team_id: str) -> None:
        cursor.execute("SELECT org_id FROM teams WHERE id = %s", (team_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Team not found: {team_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Team {team_id} belongs to another organization")

    def get_identity(self, name: str, org_id: Optional[str] = None) -> Agent:
        """Look an agent up by name. Raises NotFoundError for unknown names."""
        if org_id:
            rows = self.db.execute(
                "SELECT * FROM agents WHERE name = %s AND org_id = %s", (name, org_id)
            )
        else:
            rows = self.db.execute("SELECT * FROM agents WHERE name = %s", (name,))

        if not rows:
            raise NotFoundError(f"Agent not found: {name}")
        if len(rows) > 1:
            raise FleetError(f"Agent name {name} exists in several organizations; pass org_id")
        return self._row_to_agent(rows[0])

    def get(self, org_id: str, agent_id: str) -> Agent:
        row = self.db.execute_one("SELECT * FROM agents WHERE id = %s", (agent_id,))
        if not row:
            raise NotFoundError(f"Agent not found: {agent_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Agent {agent_id} belongs to another organization")
        return self._row_to_agent(row)

    def load(self, cursor: Cursor, org_id: str, agent_id: str) -> Agent:
        """Fetch and org-check an agent inside an open transaction."""
        cursor.execute("SELECT * FROM agents WHERE id = %s", (agent_id,))
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Agent not found: {agent_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Agent {agent_id} belongs to another organization")
        return self._row_to_agent(row)

    def list(self, org_id: str, team_id: Optional[str] = None) -> List[Agent]:
        if team_id:
            rows = self.db.execute(
                "SELECT * FROM agents WHERE org_id = %s AND team_id = %s ORDER BY name",
                (org_id, team_id)
            )
        else:
            rows = self.db.execute(
                "SELECT * FROM agents WHERE org_id = %s ORDER BY name", (org_id,)
            )
        return [self._row_to_agent(row) for row in rows]

    def heartbeat(
        self,
        org_id: str,
        agent_id: str,
        status: Optional[str] = None,
        session_key: Optional[str] = None
    ) -> None:
        """Refresh last-seen, optionally setting status and session key."""
        if status is not None and status not in AGENT_STATUSES:
            raise InvalidStatusError(f"Unknown agent status: {status}")

        updates = {'last_heartbeat': utcnow_iso()}
        if status is not None:
            updates['status'] = status
        if session_key is not None:
            updates['session_key'] = session_key

        with self.db.transaction() as cur:
            self.load(cur, org_id, agent_id)
            set_clause = ', '.join(f"{key} = %s" for key in updates)
            cur.execute(
                f"UPDATE agents SET {set_clause} WHERE id = %s",
                tuple(updates.values()) + (agent_id,)
            )

    def update_status(
        self,
        org_id: str,
        agent_id: str,
        status: str,
        current_task_id=_UNSET,
        cursor: Optional[Cursor] = None
    ) -> None:
        """Set agent status; ``current_task_id`` is written only when passed."""
        if status not in AGENT_STATUSES:
            raise InvalidStatusError(f"Unknown agent status: {status}")

        def apply(cur: Cursor):
            self.load(cur, org_id, agent_id)
            if current_task_id is _UNSET:
                cur.execute(
                    "UPDATE agents SET status = %s WHERE id = %s", (status, agent_id)
                )
            else:
                cur.execute(
                    "UPDATE agents SET status = %s, current_task_id = %s WHERE id = %s",
                    (status, current_task_id, agent_id)
                )

        if cursor is not None:
            apply(cursor)
        else:
            with self.db.transaction() as cur:
                apply(cur)
        logger.debug(f"Agent {agent_id} -> {status}")

    def update(
        self,
        org_id: str,
        agent_id: str,
        soul: Optional[str] = None,
        role: Optional[str] = None,
        team_id: Optional[str] = None
    ) -> Agent:
        """Edit soul, role or team. Soul changes are picked up on the next heartbeat."""
        updates = {}
        if soul is not None:
            updates['soul'] = soul
        if role is not None:
            updates['role'] = role
        if team_id is not None:
            updates['team_id'] = team_id

        with self.db.transaction() as cur:
            self.load(cur, org_id, agent_id)
            if team_id:
                self.check_team(cur, org_id, team_id)
            if updates:
                set_clause = ', '.join(f"{key} = %s" for key in updates)
                cur.execute(
                    f"UPDATE agents SET {set_clause} WHERE id = %s",
                    tuple(updates.values()) + (agent_id,)
                )

        if 'soul' in updates:
            logger.info(f"Updated soul of agent {agent_id}")
        return self.get(org_id, agent_id)

    def set_container(self, agent_id: str, container_id: Optional[str]) -> None:
        with self.db.transaction() as cur:
            cur.execute(
                "UPDATE agents SET container_id = %s WHERE id = %s",
                (container_id, agent_id)
            )

    def remove(self, org_id: str, agent_id: str) -> None:
        with self.db.transaction() as cur:
            self.load(cur, org_id, agent_id)
            cur.execute("DELETE FROM agents WHERE id = %s", (agent_id,))
        logger.info(f"Removed agent {agent_id}")

    def find_inactive_with_containers(self, timeout_seconds: int) -> List[Agent]:
        """Agents across all orgs holding a container whose heartbeat is stale."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        rows = self.db.execute(
            "SELECT * FROM agents WHERE container_id IS NOT NULL"
        )

        stale = []
        for row in rows:
            agent = self._row_to_agent(row)
            if not agent.last_heartbeat:
                stale.append(agent)
                continue
            try:
                last_seen = datetime.fromisoformat(agent.last_heartbeat)
                if last_seen.tzinfo is None:
                    last_seen = last_seen.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"Bad heartbeat timestamp on {agent.id}: {agent.last_heartbeat}")
                stale.append(agent)
                continue
            if last_seen < cutoff:
                stale.append(agent)
        return stale

    def _row_to_agent(self, row) -> Agent:
        return Agent(
            id=row['id'],
            org_id=row['org_id'],
            name=row['name'],
            role=row['role'],
            soul=row['soul'],
            team_id=row['team_id'],
            status=row['status'],
            session_key=row['session_key'] or "",
            current_task_id=row['current_task_id'],
            container_id=row['container_id'],
            last_heartbeat=str(row['last_heartbeat']) if row['last_heartbeat'] else None,
            created_at=str(row['created_at'])
        )
