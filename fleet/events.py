"""
Event Dispatcher
================

Reacts to task status transitions. Each reaction is one branch on the
event type in ``process_event``; add new ones the same way.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from .messages import ChatRouter
from .models import TaskStatus, GENERAL_CHANNEL, team_channel
from .proposals import ProposalManager, NARRATIVE_DEPTH
from .tasks import TaskRegistry

logger = logging.getLogger(__name__)

TASK_STATUS_CHANGED = "task_status_changed"

BLOCKER_ACTION = "analyze_blocker"
BLOCKER_COST = 0.02
BLOCKER_CONFIDENCE = 0.9
BLOCKER_RATIONALE = "Task is blocked. I need to analyze why the flow has stopped."


@dataclass
class FleetEvent:
    """A system-level event fed to the dispatcher."""
    type: str
    org_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class EventDispatcher:
    """Turns task transitions into follow-up proposals and messages."""

    def __init__(self, tasks: TaskRegistry, proposals: ProposalManager, chat: ChatRouter):
        self.tasks = tasks
        self.proposals = proposals
        self.chat = chat

    def on_task_status_changed(self, org_id: str, task_id: str, new_status: str) -> None:
        """Status listener hooked into ``TaskRegistry.update_status``."""
        self.process_event(FleetEvent(
            type=TASK_STATUS_CHANGED,
            org_id=org_id,
            metadata={'task_id': task_id, 'status': new_status}
        ))

    def process_event(self, event: FleetEvent) -> Optional[str]:
        """
        Handle one event.

        Returns:
            Id of a proposal created in response, if any
        """
        if event.type == TASK_STATUS_CHANGED:
            if event.metadata.get('status') == TaskStatus.BLOCKED.value:
                return self._handle_blocked(event.org_id, event.metadata['task_id'])
        return None

    def _handle_blocked(self, org_id: str, task_id: str) -> Optional[str]:
        task = self.tasks.get(org_id, task_id)
        assignees = task.assignees
        if not assignees:
            logger.info(f"Task {task_id} blocked with no assignee; nothing to diagnose")
            return None

        agent_id = assignees[0]
        result = self.proposals.propose(
            org_id,
            task_id,
            agent_id,
            BLOCKER_ACTION,
            {'task_id': task_id},
            BLOCKER_RATIONALE,
            cost=BLOCKER_COST,
            confidence=BLOCKER_CONFIDENCE,
            announce=False
        )

        if result.auto_approved:
            content = (
                f"🔍 DIAGNOSTIC STARTED: '{task.title}' is blocked. "
                f"Blocker analysis is running as mission {result.mission_id}."
            )
        else:
            content = (
                f"🚧 APPROVAL NEEDED: '{task.title}' is blocked. "
                f"Proposal {result.proposal_id} ({BLOCKER_ACTION}) awaits sign-off."
            )

        channel = team_channel(task.team_id) if task.team_id else GENERAL_CHANNEL
        self.chat.send(
            org_id, channel, content,
            agent_id=agent_id, task_id=task_id, depth=NARRATIVE_DEPTH
        )
        logger.info(f"Blocked task {task_id}: {BLOCKER_ACTION} {result.status}")
        return result.proposal_id
