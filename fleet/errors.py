"""
Fleet Errors
============

Exceptions raised by the orchestration core. A lost claim race is not an
error (``claim`` returns False); everything here is surfaced to the caller.
"""


class FleetError(Exception):
    """Base class for orchestration errors."""


class AuthorizationError(FleetError):
    """Caller's organization does not own the task, agent or proposal."""


class NotFoundError(FleetError):
    """Referenced entity does not exist."""


class ProposalStateError(FleetError):
    """Proposal is no longer pending and cannot be resolved again."""


class InvalidStatusError(FleetError):
    """Unknown status value for a task or agent."""


class BrainError(FleetError):
    """The language model call failed or timed out."""
