"""
Proposal Manager
================

Records agent action requests, runs them through the Gatekeeper and turns
approved ones into missions.

An approved (or auto-approved) proposal becomes a new task in ``assigned``
status bound to the requesting agent. Resolution is a conditional update on
``status = 'pending'``, so a proposal is resolved at most once.
"""

import json
import uuid
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Callable

from .activities import ActivityLog
from .agents import AgentDirectory
from .db import DatabaseConnection, Cursor, parse_json_field
from .errors import AuthorizationError, NotFoundError, ProposalStateError
from .messages import ChatRouter
from .models import (
    Proposal, ProposalStatus, TaskStatus, Agent,
    ProposalCreated, ActionAutoExecuted, ProposalApproved, ProposalDenied,
    GENERAL_CHANNEL, team_channel, utcnow_iso,
)
from .policies import PolicyResolver
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)

# Narrative messages from the gatekeeper sit one hop into a reply chain
NARRATIVE_DEPTH = 1

ProposalListener = Callable[[str, str, Dict[str, Any]], None]


@dataclass
class ProposalResult:
    """Outcome of ``propose``."""
    proposal_id: str
    status: str
    mission_id: Optional[str] = None  # id of the synthesized task

    @property
    def auto_approved(self) -> bool:
        return self.status == ProposalStatus.AUTO_APPROVED.value


class ProposalManager:
    """Proposal workflow on top of the task registry and gatekeeper."""

    def __init__(
        self,
        db: DatabaseConnection,
        agents: AgentDirectory,
        tasks: TaskRegistry,
        policies: PolicyResolver,
        chat: ChatRouter,
        activities: ActivityLog
    ):
        self.db = db
        self.agents = agents
        self.tasks = tasks
        self.policies = policies
        self.chat = chat
        self.activities = activities
        self._listeners: List[ProposalListener] = []

    def add_listener(self, listener: ProposalListener) -> None:
        """Register ``listener(org_id, event_type, data)`` for resolved/created proposals."""
        self._listeners.append(listener)

    def _notify(self, org_id: str, event_type: str, data: Dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                listener(org_id, event_type, data)
            except Exception as e:
                logger.error(f"Proposal listener failed on {event_type}: {e}", exc_info=True)

    # ==================== Propose ====================

    def propose(
        self,
        org_id: str,
        task_id: Optional[str],
        agent_id: str,
        action: str,
        params: Dict[str, Any],
        rationale: str,
        cost: Optional[float] = None,
        confidence: Optional[float] = None,
        announce: bool = True
    ) -> ProposalResult:
        """
        Request a gated action on behalf of an agent.

        Args:
            task_id: Task the request relates to, if any
            announce: Post the narrative message into the agent's channel

        Returns:
            ProposalResult with the gatekeeper's verdict and, when
            auto-approved, the id of the new mission
        """
        with self.db.transaction() as cur:
            agent = self.agents.load(cur, org_id, agent_id)
            if task_id:
                self.tasks.load(cur, org_id, task_id)

            status = self.policies.evaluate(
                org_id, agent.team_id, action, cost=cost, confidence=confidence, cursor=cur
            )

            proposal = Proposal(
                id=str(uuid.uuid4()),
                org_id=org_id,
                task_id=task_id,
                agent_id=agent_id,
                action=action,
                params=params or {},
                rationale=rationale,
                team_id=agent.team_id,
                cost=cost,
                confidence=confidence,
                status=status
            )
            if status == ProposalStatus.AUTO_APPROVED.value:
                proposal.resolved_at = utcnow_iso()
            self._insert(cur, proposal)

            if status == ProposalStatus.AUTO_APPROVED.value:
                mission_id = self._materialize(cur, proposal, agent)
                self.activities.log(
                    org_id,
                    ActionAutoExecuted(
                        proposal_id=proposal.id, task_id=task_id,
                        action=action, mission_id=mission_id
                    ),
                    f"Agent automatically executed {action} (Policy Approved)",
                    agent_id=agent_id,
                    cursor=cur
                )
                if announce:
                    self._announce(
                        cur, agent, task_id,
                        f"🤖 AUTONOMOUS ACTION: {action} approved by policy. "
                        f"Executing now as mission {mission_id}.\nRATIONALE: {rationale}"
                    )
            else:
                mission_id = None
                self.activities.log(
                    org_id,
                    ProposalCreated(proposal_id=proposal.id, task_id=task_id, action=action),
                    f"Agent proposed action: {action} (Awaiting Commander)",
                    agent_id=agent_id,
                    cursor=cur
                )
                if announce:
                    self._announce(
                        cur, agent, task_id,
                        f"⏳ APPROVAL REQUESTED: {action} (proposal {proposal.id})\n"
                        f"RATIONALE: {rationale}"
                    )

        logger.info(f"Proposal {proposal.id} ({action}) by {agent.name}: {status}")
        result = ProposalResult(proposal_id=proposal.id, status=status, mission_id=mission_id)
        self._notify(org_id, 'proposal_created', {
            'proposal_id': proposal.id, 'action': action,
            'status': status, 'mission_id': mission_id,
        })
        return result

    # ==================== Resolve ====================

    def approve(self, org_id: str, proposal_id: str) -> ProposalResult:
        """Approve a pending proposal and create its mission."""
        with self.db.transaction() as cur:
            proposal = self._load_pending(cur, org_id, proposal_id)
            self._transition(cur, proposal, ProposalStatus.APPROVED.value)

            agent = self.agents.load(cur, org_id, proposal.agent_id)
            mission_id = self._materialize(cur, proposal, agent)
            self.activities.log(
                org_id,
                ProposalApproved(
                    proposal_id=proposal_id, task_id=proposal.task_id,
                    action=proposal.action, mission_id=mission_id
                ),
                f"Commander approved action: {proposal.action}",
                agent_id=proposal.agent_id,
                cursor=cur
            )
            self._announce(
                cur, agent, proposal.task_id,
                f"✅ APPROVED: {proposal.action}. Executing as mission {mission_id}."
            )

        logger.info(f"Proposal {proposal_id} approved -> mission {mission_id}")
        self._notify(org_id, 'proposal_approved', {
            'proposal_id': proposal_id, 'action': proposal.action, 'mission_id': mission_id,
        })
        return ProposalResult(
            proposal_id=proposal_id,
            status=ProposalStatus.APPROVED.value,
            mission_id=mission_id
        )

    def deny(self, org_id: str, proposal_id: str, reason: Optional[str] = None) -> None:
        """Deny a pending proposal. No task, no message."""
        with self.db.transaction() as cur:
            proposal = self._load_pending(cur, org_id, proposal_id)
            self._transition(cur, proposal, ProposalStatus.DENIED.value, reason=reason)
            suffix = f". Reason: {reason}" if reason else ""
            self.activities.log(
                org_id,
                ProposalDenied(
                    proposal_id=proposal_id, task_id=proposal.task_id,
                    action=proposal.action, reason=reason
                ),
                f"Commander denied action: {proposal.action}{suffix}",
                agent_id=proposal.agent_id,
                cursor=cur
            )

        logger.info(f"Proposal {proposal_id} denied{suffix}")
        self._notify(org_id, 'proposal_denied', {
            'proposal_id': proposal_id, 'action': proposal.action, 'reason': reason,
        })

    def _load_pending(self, cursor: Cursor, org_id: str, proposal_id: str) -> Proposal:
        cursor.execute(
            f"SELECT * FROM proposals WHERE id = %s{self.db.for_update}", (proposal_id,)
        )
        row = cursor.fetchone()
        if not row:
            raise NotFoundError(f"Proposal not found: {proposal_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Proposal {proposal_id} belongs to another organization")
        proposal = self._row_to_proposal(row)
        if proposal.status != ProposalStatus.PENDING.value:
            raise ProposalStateError(f"Proposal {proposal_id} is already {proposal.status}")
        return proposal

    def _transition(self, cursor: Cursor, proposal: Proposal, status: str, reason: str = None) -> None:
        cursor.execute("""
            UPDATE proposals SET status = %s, reason = %s, resolved_at = %s
            WHERE id = %s AND status = %s
        """, (status, reason, utcnow_iso(), proposal.id, ProposalStatus.PENDING.value))
        if cursor.rowcount == 0:
            raise ProposalStateError(f"Proposal {proposal.id} was resolved concurrently")
        proposal.status = status

    # ==================== Helpers ====================

    def _materialize(self, cursor: Cursor, proposal: Proposal, agent: Agent) -> str:
        """Create the mission for an approved proposal and link it back."""
        params = proposal.params or {}
        title = params.get('title') or proposal.action.replace('_', ' ').title()
        description = proposal.rationale
        if params:
            description += f"\n\nPARAMS: {json.dumps(params, sort_keys=True)}"

        task = self.tasks.create(
            proposal.org_id,
            title,
            description,
            team_id=agent.team_id,
            status=TaskStatus.ASSIGNED.value,
            assignee_id=agent.id,
            mission_id=params.get('mission_id'),
            created_by=agent.id,
            proposal_id=proposal.id,
            parent_task_id=proposal.task_id,
            cursor=cursor
        )
        cursor.execute(
            "UPDATE proposals SET mission_id = %s WHERE id = %s", (task.id, proposal.id)
        )
        proposal.mission_id = task.id
        return task.id

    def _announce(self, cursor: Cursor, agent: Agent, task_id: Optional[str], content: str) -> None:
        channel = team_channel(agent.team_id) if agent.team_id else GENERAL_CHANNEL
        self.chat.send(
            agent.org_id, channel, content,
            agent_id=agent.id, task_id=task_id, depth=NARRATIVE_DEPTH, cursor=cursor
        )

    def _insert(self, cursor: Cursor, proposal: Proposal) -> None:
        cursor.execute("""
            INSERT INTO proposals
            (id, org_id, task_id, agent_id, team_id, action, params, rationale,
             cost, confidence, status, mission_id, reason, created_at, resolved_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            proposal.id, proposal.org_id, proposal.task_id, proposal.agent_id,
            proposal.team_id, proposal.action, json.dumps(proposal.params),
            proposal.rationale, proposal.cost, proposal.confidence, proposal.status,
            proposal.mission_id, proposal.reason, proposal.created_at, proposal.resolved_at
        ))

    # ==================== Queries ====================

    def get(self, org_id: str, proposal_id: str) -> Proposal:
        row = self.db.execute_one("SELECT * FROM proposals WHERE id = %s", (proposal_id,))
        if not row:
            raise NotFoundError(f"Proposal not found: {proposal_id}")
        if row['org_id'] != org_id:
            raise AuthorizationError(f"Proposal {proposal_id} belongs to another organization")
        return self._row_to_proposal(row)

    def list(self, org_id: str, status: Optional[str] = ProposalStatus.PENDING.value, limit: int = 50) -> List[Proposal]:
        if status:
            rows = self.db.execute("""
                SELECT * FROM proposals WHERE org_id = %s AND status = %s
                ORDER BY created_at DESC LIMIT %s
            """, (org_id, status, limit))
        else:
            rows = self.db.execute("""
                SELECT * FROM proposals WHERE org_id = %s
                ORDER BY created_at DESC LIMIT %s
            """, (org_id, limit))
        return [self._row_to_proposal(row) for row in rows]

    def _row_to_proposal(self, row) -> Proposal:
        return Proposal(
            id=row['id'],
            org_id=row['org_id'],
            task_id=row['task_id'],
            agent_id=row['agent_id'],
            action=row['action'],
            params=parse_json_field(row['params']) or {},
            rationale=row['rationale'],
            team_id=row['team_id'],
            cost=row['cost'],
            confidence=row['confidence'],
            status=row['status'],
            mission_id=row['mission_id'],
            reason=row['reason'],
            created_at=str(row['created_at']),
            resolved_at=str(row['resolved_at']) if row['resolved_at'] else None
        )
