"""
Fleet Data Model
================

Enums and dataclasses shared by the task registry, gatekeeper, proposal
manager, chat router and agent runtime.

Activity payloads are a tagged union: each kind has its own dataclass and
``ACTIVITY_PAYLOADS`` maps the ``kind`` tag back to the class.
"""

import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Union


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==================== Enums ====================

class TaskStatus(Enum):
    """Mission lifecycle states."""
    INBOX = "inbox"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"


class AgentStatus(Enum):
    """Agent lifecycle states."""
    IDLE = "idle"
    ACTIVE = "active"
    WORKING = "working"
    BLOCKED = "blocked"
    OFFLINE = "offline"


class ProposalStatus(Enum):
    """Proposal resolution. Only PENDING may transition."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    AUTO_APPROVED = "auto_approved"


class PolicyMode(Enum):
    """Autonomy level for an action type."""
    AUTO = "auto"
    MANUAL = "manual"
    PROPOSE_ONLY = "propose_only"


TASK_STATUSES = {s.value for s in TaskStatus}
AGENT_STATUSES = {s.value for s in AgentStatus}
POLICY_MODES = {m.value for m in PolicyMode}

# Tasks that still hold their assignee
OPEN_TASK_STATUSES = [
    TaskStatus.INBOX.value,
    TaskStatus.ASSIGNED.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.REVIEW.value,
    TaskStatus.BLOCKED.value,
]


# ==================== Channels ====================

GENERAL_CHANNEL = "general"


def team_channel(team_id: str) -> str:
    return f"team-{team_id}"


def task_channel(task_id: str) -> str:
    return f"task-{task_id}"


# ==================== Entities ====================

@dataclass
class Team:
    """A department agents belong to."""
    id: str
    org_id: str
    name: str
    slug: str
    mission: str = ""
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Agent:
    """An agent identity as stored in the fleet roster."""
    id: str
    org_id: str
    name: str
    role: str
    soul: Optional[str] = None
    team_id: Optional[str] = None
    status: str = AgentStatus.OFFLINE.value
    session_key: str = ""
    current_task_id: Optional[str] = None
    container_id: Optional[str] = None
    last_heartbeat: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Agent':
        return cls(**data)


@dataclass
class Task:
    """A mission.

    ``assignee_ids`` and ``assigned_to`` are both kept; see DESIGN.md.
    """
    id: str
    org_id: str
    title: str
    description: str
    status: str = TaskStatus.INBOX.value
    team_id: Optional[str] = None
    assignee_ids: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None
    priority: Optional[int] = None
    output: Optional[str] = None
    mission_id: Optional[str] = None
    proposal_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def assignees(self) -> List[str]:
        """Assignee set, falling back to the singular field."""
        if self.assignee_ids:
            return list(self.assignee_ids)
        if self.assigned_to:
            return [self.assigned_to]
        return []

    def is_assigned_to(self, agent_id: str) -> bool:
        return agent_id in self.assignees

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(**data)


@dataclass
class Proposal:
    """An agent request to perform a gated action."""
    id: str
    org_id: str
    task_id: Optional[str]
    agent_id: str
    action: str
    params: Dict[str, Any]
    rationale: str
    team_id: Optional[str] = None
    cost: Optional[float] = None
    confidence: Optional[float] = None
    status: str = ProposalStatus.PENDING.value
    mission_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)
    resolved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Policy:
    """Autonomy rule keyed by (org, team, action type)."""
    id: str
    org_id: str
    action_type: str
    mode: str = PolicyMode.MANUAL.value
    team_id: Optional[str] = None
    max_cost: Optional[float] = None
    min_confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    """A chat message in one channel."""
    id: str
    org_id: str
    channel_id: str
    content: str
    from_agent_id: Optional[str] = None  # None = human
    task_id: Optional[str] = None
    depth: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ==================== Activity Payloads ====================

@dataclass
class TaskCreated:
    task_id: str
    title: str
    kind: str = "task_created"


@dataclass
class TaskAssigned:
    task_id: str
    agent_id: str
    claimed: bool = False  # True when self-claimed from the inbox
    kind: str = "task_assigned"


@dataclass
class TaskCompleted:
    task_id: str
    output: str = ""
    kind: str = "task_completed"


@dataclass
class ProposalCreated:
    proposal_id: str
    task_id: Optional[str]
    action: str
    kind: str = "proposal_created"


@dataclass
class ActionAutoExecuted:
    proposal_id: str
    task_id: Optional[str]
    action: str
    mission_id: str
    kind: str = "action_auto_executed"


@dataclass
class ProposalApproved:
    proposal_id: str
    task_id: Optional[str]
    action: str
    mission_id: str
    kind: str = "proposal_approved"


@dataclass
class ProposalDenied:
    proposal_id: str
    task_id: Optional[str]
    action: str
    reason: Optional[str] = None
    kind: str = "proposal_denied"


ActivityPayload = Union[
    TaskCreated,
    TaskAssigned,
    TaskCompleted,
    ProposalCreated,
    ActionAutoExecuted,
    ProposalApproved,
    ProposalDenied,
]

ACTIVITY_PAYLOADS = {
    cls.kind: cls
    for cls in (
        TaskCreated, TaskAssigned, TaskCompleted, ProposalCreated,
        ActionAutoExecuted, ProposalApproved, ProposalDenied,
    )
}


def payload_from_dict(data: Dict[str, Any]) -> ActivityPayload:
    """Rebuild a typed payload from its stored form."""
    kind = data.get('kind')
    cls = ACTIVITY_PAYLOADS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown activity kind: {kind}")
    return cls(**data)


@dataclass
class Activity:
    """Audit log entry."""
    id: str
    org_id: str
    message: str
    payload: ActivityPayload
    agent_id: Optional[str] = None
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def kind(self) -> str:
        return self.payload.kind

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind
        return data
