"""
Policy Resolver (Gatekeeper)
============================

Decides whether an agent action runs on its own or waits for a human.

Lookup order, first match wins:

1. (org, team, action)
2. (org, team, "*")
3. (org, no team, action)
4. nothing found -> pending

``manual`` and ``propose_only`` both resolve to pending. An ``auto`` policy
still resolves to pending when the cost exceeds ``max_cost`` or the
confidence is below ``min_confidence``.
"""

import uuid
import logging
from typing import Optional, List

from .db import DatabaseConnection, Cursor
from .errors import InvalidStatusError, NotFoundError, AuthorizationError
from .models import Policy, PolicyMode, ProposalStatus, POLICY_MODES

logger = logging.getLogger(__name__)

WILDCARD_ACTION = "*"


class PolicyResolver:
    """Autonomy policies and their evaluation."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def _find(self, cursor: Cursor, org_id: str, team_id: Optional[str], action_type: str) -> Optional[Policy]:
        if team_id is None:
            cursor.execute("""
                SELECT * FROM policies
                WHERE org_id = %s AND team_id IS NULL AND action_type = %s
            """, (org_id, action_type))
        else:
            cursor.execute("""
                SELECT * FROM policies
                WHERE org_id = %s AND team_id = %s AND action_type = %s
            """, (org_id, team_id, action_type))
        row = cursor.fetchone()
        return self._row_to_policy(row) if row else None

    def resolve(
        self,
        org_id: str,
        team_id: Optional[str],
        action_type: str,
        cursor: Optional[Cursor] = None
    ) -> Optional[Policy]:
        """Return the policy that governs an action, or None."""
        if cursor is None:
            with self.db.transaction() as cur:
                return self.resolve(org_id, team_id, action_type, cursor=cur)

        policy = self._find(cursor, org_id, team_id, action_type)
        if policy is None:
            policy = self._find(cursor, org_id, team_id, WILDCARD_ACTION)
        if policy is None:
            policy = self._find(cursor, org_id, None, action_type)
        return policy

    def evaluate(
        self,
        org_id: str,
        team_id: Optional[str],
        action_type: str,
        cost: Optional[float] = None,
        confidence: Optional[float] = None,
        cursor: Optional[Cursor] = None
    ) -> str:
        """
        Evaluate an action request.

        Returns:
            ``auto_approved`` or ``pending``
        """
        policy = self.resolve(org_id, team_id, action_type, cursor=cursor)
        pending = ProposalStatus.PENDING.value

        if policy is None:
            logger.info(f"No policy for {action_type} (org {org_id}, team {team_id}): pending")
            return pending

        if policy.mode != PolicyMode.AUTO.value:
            logger.info(f"Policy {policy.id} is {policy.mode} for {action_type}: pending")
            return pending

        if policy.max_cost is not None and cost is not None and cost > policy.max_cost:
            logger.info(f"{action_type} cost {cost} exceeds max {policy.max_cost}: pending")
            return pending

        if (policy.min_confidence is not None and confidence is not None
                and confidence < policy.min_confidence):
            logger.info(f"{action_type} confidence {confidence} below min {policy.min_confidence}: pending")
            return pending

        logger.info(f"{action_type} auto-approved by policy {policy.id}")
        return ProposalStatus.AUTO_APPROVED.value

    # ==================== Administration ====================

    def set_policy(
        self,
        org_id: str,
        action_type: str,
        mode: str,
        team_id: Optional[str] = None,
        max_cost: Optional[float] = None,
        min_confidence: Optional[float] = None
    ) -> Policy:
        """Create or replace the policy for (org, team, action)."""
        if mode not in POLICY_MODES:
            raise InvalidStatusError(f"Unknown policy mode: {mode}")

        with self.db.transaction() as cur:
            if team_id is not None:
                cur.execute("SELECT org_id FROM teams WHERE id = %s", (team_id,))
                row = cur.fetchone()
                if not row:
                    raise NotFoundError(f"Team not found: {team_id}")
                if row['org_id'] != org_id:
                    raise AuthorizationError(f"Team {team_id} belongs to another organization")

            existing = self._find(cur, org_id, team_id, action_type)
            if existing:
                cur.execute("""
                    UPDATE policies SET mode = %s, max_cost = %s, min_confidence = %s
                    WHERE id = %s
                """, (mode, max_cost, min_confidence, existing.id))
                policy_id = existing.id
            else:
                policy_id = str(uuid.uuid4())
                cur.execute("""
                    INSERT INTO policies
                    (id, org_id, team_id, action_type, mode, max_cost, min_confidence)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """, (policy_id, org_id, team_id, action_type, mode, max_cost, min_confidence))

        logger.info(f"Policy for {action_type} (team {team_id}) set to {mode}")
        return Policy(
            id=policy_id,
            org_id=org_id,
            action_type=action_type,
            mode=mode,
            team_id=team_id,
            max_cost=max_cost,
            min_confidence=min_confidence
        )

    def list_policies(self, org_id: str) -> List[Policy]:
        rows = self.db.execute(
            "SELECT * FROM policies WHERE org_id = %s ORDER BY action_type", (org_id,)
        )
        return [self._row_to_policy(row) for row in rows]

    def delete_policy(self, org_id: str, policy_id: str) -> None:
        with self.db.transaction() as cur:
            cur.execute("SELECT org_id FROM policies WHERE id = %s", (policy_id,))
            row = cur.fetchone()
            if not row:
                raise NotFoundError(f"Policy not found: {policy_id}")
            if row['org_id'] != org_id:
                raise AuthorizationError(f"Policy {policy_id} belongs to another organization")
            cur.execute("DELETE FROM policies WHERE id = %s", (policy_id,))

    def _row_to_policy(self, row) -> Policy:
        return Policy(
            id=row['id'],
            org_id=row['org_id'],
            action_type=row['action_type'],
            mode=row['mode'],
            team_id=row['team_id'],
            max_cost=row['max_cost'],
            min_confidence=row['min_confidence']
        )
