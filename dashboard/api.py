"""
Fleet Management Endpoints
==========================

API endpoints for tasks, proposals, policies, chat, agents and teams.
Every request is scoped to the organization in the ``X-Org-Id`` header.
"""

from fastapi import APIRouter, HTTPException, Header
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List

from fleet.errors import (
    FleetError,
    AuthorizationError,
    NotFoundError,
    ProposalStateError,
    InvalidStatusError
)

# Will be imported from main server
orchestrator = None

router = APIRouter(prefix="/api", tags=["fleet"])


def set_orchestrator(orch):
    """Set the orchestrator instance (called from main server)."""
    global orchestrator
    orchestrator = orch


def _require_orchestrator():
    if not orchestrator:
        raise HTTPException(status_code=500, detail="Orchestrator not initialized")
    return orchestrator


def _http_error(e: Exception) -> HTTPException:
    """Map fleet errors onto status codes."""
    if isinstance(e, AuthorizationError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ProposalStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InvalidStatusError, FleetError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _org(x_org_id: Optional[str]) -> str:
    return x_org_id or _require_orchestrator().config.get('org_id', 'dev-org')


# Pydantic models for request/response
class TaskCreate(BaseModel):
    """Create a new task."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")
    team_id: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    assignee_id: Optional[str] = None
    mission_id: Optional[str] = None


class TaskAssign(BaseModel):
    agent_id: str


class TaskStatusUpdate(BaseModel):
    status: str


class TaskComplete(BaseModel):
    agent_id: str
    output: str = ""


class ProposalCreate(BaseModel):
    """Agent request to perform an action."""
    agent_id: str
    action: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    rationale: str = ""
    task_id: Optional[str] = None
    cost: Optional[float] = Field(default=None, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class ProposalDeny(BaseModel):
    reason: Optional[str] = None


class PolicySet(BaseModel):
    """Upsert an autonomy rule."""
    action_type: str = Field(..., min_length=1)
    mode: str = Field(..., pattern="^(auto|propose_only|manual)$")
    team_id: Optional[str] = None
    max_cost: Optional[float] = Field(default=None, ge=0)
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)


class MessageCreate(BaseModel):
    channel_id: str = Field(default="general")
    content: str = Field(..., min_length=1)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None


class AgentHire(BaseModel):
    """Hire a new agent."""
    name: str = Field(..., min_length=1, max_length=100)
    role: str = Field(..., min_length=1)
    soul: Optional[str] = None
    team_id: Optional[str] = None


class AgentUpdate(BaseModel):
    soul: Optional[str] = None
    role: Optional[str] = None
    team_id: Optional[str] = None


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = None
    mission: str = ""


# ==================== Tasks ====================

@router.get("/tasks")
def list_tasks(
    status: Optional[str] = None,
    team_id: Optional[str] = None,
    limit: int = 100,
    x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """List tasks, highest priority first."""
    orch = _require_orchestrator()
    tasks = orch.tasks.list(_org(x_org_id), status=status, team_id=team_id, limit=limit)
    return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}


@router.post("/tasks")
def create_task(task: TaskCreate, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        created = orch.tasks.create(
            _org(x_org_id),
            task.title,
            task.description,
            team_id=task.team_id,
            priority=task.priority,
            assignee_id=task.assignee_id,
            mission_id=task.mission_id
        )
    except (FleetError, ValueError) as e:
        raise _http_error(e)
    return {"status": "created", "task": created.to_dict()}


@router.get("/tasks/{task_id}")
def get_task(task_id: str, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        return orch.tasks.get(_org(x_org_id), task_id).to_dict()
    except FleetError as e:
        raise _http_error(e)


@router.post("/tasks/{task_id}/assign")
def assign_task(
    task_id: str, body: TaskAssign, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """Human assignment; no inbox precondition."""
    orch = _require_orchestrator()
    try:
        orch.tasks.assign(_org(x_org_id), task_id, body.agent_id)
    except FleetError as e:
        raise _http_error(e)
    return {"status": "assigned", "task_id": task_id, "agent_id": body.agent_id}


@router.post("/tasks/{task_id}/claim")
def claim_task(
    task_id: str, body: TaskAssign, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        claimed = orch.tasks.claim(_org(x_org_id), task_id, body.agent_id)
    except FleetError as e:
        raise _http_error(e)
    return {"claimed": claimed, "task_id": task_id}


@router.put("/tasks/{task_id}/status")
def update_task_status(
    task_id: str, body: TaskStatusUpdate, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        orch.tasks.update_status(_org(x_org_id), task_id, body.status)
    except FleetError as e:
        raise _http_error(e)
    return {"status": "updated", "task_id": task_id, "new_status": body.status}


@router.post("/tasks/{task_id}/complete")
def complete_task(
    task_id: str, body: TaskComplete, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        completed = orch.tasks.complete(_org(x_org_id), task_id, body.agent_id, body.output)
    except FleetError as e:
        raise _http_error(e)
    return {"completed": completed, "task_id": task_id}


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        orch.tasks.delete(_org(x_org_id), task_id)
    except FleetError as e:
        raise _http_error(e)
    return {"status": "deleted", "task_id": task_id}


@router.get("/stats")
def get_stats(x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """Task counts per status and agent counts per status."""
    orch = _require_orchestrator()
    org_id = _org(x_org_id)
    agents: Dict[str, int] = {}
    for agent in orch.agents.list(org_id):
        agents[agent.status] = agents.get(agent.status, 0) + 1
    return {"tasks": orch.get_queue_stats(org_id), "agents": agents}


# ==================== Proposals ====================

@router.post("/proposals")
def create_proposal(
    proposal: ProposalCreate, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """Submit a proposal; the gatekeeper decides auto-approval."""
    orch = _require_orchestrator()
    try:
        result = orch.proposals.propose(
            _org(x_org_id),
            proposal.task_id,
            proposal.agent_id,
            proposal.action,
            proposal.params,
            proposal.rationale,
            cost=proposal.cost,
            confidence=proposal.confidence
        )
    except FleetError as e:
        raise _http_error(e)
    return {
        "proposal_id": result.proposal_id,
        "status": result.status,
        "mission_id": result.mission_id
    }


@router.get("/proposals")
def list_proposals(
    status: Optional[str] = "pending",
    limit: int = 50,
    x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    proposals = orch.proposals.list(_org(x_org_id), status=status or None, limit=limit)
    return {"proposals": [p.to_dict() for p in proposals], "total": len(proposals)}


@router.post("/proposals/{proposal_id}/approve")
def approve_proposal(proposal_id: str, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        result = orch.proposals.approve(_org(x_org_id), proposal_id)
    except FleetError as e:
        raise _http_error(e)
    return {"proposal_id": proposal_id, "status": result.status, "mission_id": result.mission_id}


@router.post("/proposals/{proposal_id}/deny")
def deny_proposal(
    proposal_id: str, body: ProposalDeny, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        orch.proposals.deny(_org(x_org_id), proposal_id, reason=body.reason)
    except FleetError as e:
        raise _http_error(e)
    return {"proposal_id": proposal_id, "status": "denied"}


# ==================== Policies ====================

@router.get("/policies")
def list_policies(x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    policies = orch.policies.list_policies(_org(x_org_id))
    return {"policies": [p.to_dict() for p in policies]}


@router.put("/policies")
def set_policy(policy: PolicySet, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        saved = orch.policies.set_policy(
            _org(x_org_id),
            policy.action_type,
            policy.mode,
            team_id=policy.team_id,
            max_cost=policy.max_cost,
            min_confidence=policy.min_confidence
        )
    except FleetError as e:
        raise _http_error(e)
    return saved.to_dict()


@router.delete("/policies/{policy_id}")
def delete_policy(policy_id: str, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        orch.policies.delete_policy(_org(x_org_id), policy_id)
    except FleetError as e:
        raise _http_error(e)
    return {"status": "deleted", "policy_id": policy_id}


# ==================== Chat ====================

@router.get("/channels/{channel_id}/messages")
def list_messages(
    channel_id: str, limit: int = 50, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    messages = orch.chat.list(_org(x_org_id), channel_id, limit=limit)
    return {"messages": [m.to_dict() for m in messages]}


@router.post("/messages")
def send_message(message: MessageCreate, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """Post a human (or agent) message at depth 0."""
    orch = _require_orchestrator()
    try:
        sent = orch.chat.send(
            _org(x_org_id),
            message.channel_id,
            message.content,
            agent_id=message.agent_id,
            task_id=message.task_id
        )
    except (FleetError, ValueError) as e:
        raise _http_error(e)
    return sent.to_dict()


@router.get("/activities")
def list_activities(
    kind: Optional[str] = None, limit: int = 20, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    activities = orch.activities.list(_org(x_org_id), kind=kind, limit=limit)
    return {"activities": [a.to_dict() for a in activities]}


# ==================== Agents & teams ====================

@router.get("/agents")
def list_agents(
    team_id: Optional[str] = None, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    orch = _require_orchestrator()
    agents = orch.agents.list(_org(x_org_id), team_id=team_id)
    return {"agents": [a.to_dict() for a in agents]}


@router.post("/agents")
def hire_agent(body: AgentHire, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """Create the agent and boot its machine."""
    orch = _require_orchestrator()
    try:
        result = orch.hire_agent(
            _org(x_org_id), body.name, body.role, soul=body.soul, team_id=body.team_id
        )
    except FleetError as e:
        raise _http_error(e)
    return {
        "status": "hired",
        "agent": result['agent'].to_dict(),
        "machine_id": result['machine_id'],
        "error": result['error']
    }


@router.patch("/agents/{agent_id}")
def update_agent(
    agent_id: str, body: AgentUpdate, x_org_id: Optional[str] = Header(default=None)
) -> Dict[str, Any]:
    """Edit soul, role or team. A new soul is live after the agent's next heartbeat."""
    orch = _require_orchestrator()
    if body.soul is None and body.role is None and body.team_id is None:
        raise HTTPException(status_code=400, detail="No updates provided")
    try:
        agent = orch.agents.update(
            _org(x_org_id), agent_id, soul=body.soul, role=body.role, team_id=body.team_id
        )
    except FleetError as e:
        raise _http_error(e)
    return agent.to_dict()


@router.delete("/agents/{agent_id}")
def fire_agent(agent_id: str, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        orch.fire_agent(_org(x_org_id), agent_id)
    except FleetError as e:
        raise _http_error(e)
    return {"status": "fired", "agent_id": agent_id}


@router.get("/teams")
def list_teams(x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    return {"teams": [t.to_dict() for t in orch.agents.list_teams(_org(x_org_id))]}


@router.post("/teams")
def create_team(body: TeamCreate, x_org_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    orch = _require_orchestrator()
    try:
        team = orch.agents.create_team(_org(x_org_id), body.name, slug=body.slug, mission=body.mission)
    except FleetError as e:
        raise _http_error(e)
    return team.to_dict()
