"""
Mission Control Fleet Package
=============================

Fleet orchestration core: task registry, autonomy gatekeeper, event
dispatcher, chat router and the per-agent runtime.
"""

from .errors import (
    FleetError,
    AuthorizationError,
    NotFoundError,
    ProposalStateError,
    InvalidStatusError,
    BrainError
)

from .models import (
    Agent,
    Team,
    Task,
    Proposal,
    Policy,
    Message,
    Activity,
    TaskStatus,
    AgentStatus,
    ProposalStatus,
    PolicyMode
)

from .orchestrator import FleetOrchestrator, get_orchestrator

from .agent_runner import AgentRuntime, AgentRunner

__all__ = [
    'FleetError',
    'AuthorizationError',
    'NotFoundError',
    'ProposalStateError',
    'InvalidStatusError',
    'BrainError',
    'Agent',
    'Team',
    'Task',
    'Proposal',
    'Policy',
    'Message',
    'Activity',
    'TaskStatus',
    'AgentStatus',
    'ProposalStatus',
    'PolicyMode',
    'FleetOrchestrator',
    'get_orchestrator',
    'AgentRuntime',
    'AgentRunner'
]
