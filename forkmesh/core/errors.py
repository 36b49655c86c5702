"""Exception hierarchy for orchestration, task execution and synchronization."""
from __future__ import annotations


class ForkmeshError(Exception):
    """Base class for every error raised by forkmesh."""


class NotFoundError(ForkmeshError, KeyError):
    """Lookup of an unknown id. Subclasses KeyError like the registries do."""

    def __str__(self) -> str:
        return self.args[0] if self.args else ""


class AgentNotFoundError(NotFoundError):
    pass


class TaskNotFoundError(NotFoundError):
    pass


class SyncJobNotFoundError(NotFoundError):
    pass


class EndpointNotFoundError(NotFoundError):
    pass


class UnknownTaskTypeError(NotFoundError):
    pass


class InvalidAgentConfigError(ForkmeshError, ValueError):
    pass


class DuplicateAgentError(InvalidAgentConfigError):
    pass


class InvalidSyncConfigError(ForkmeshError, ValueError):
    pass


class UnsafeIdentifierError(ForkmeshError, ValueError):
    """A table name from configuration is not present on the endpoint."""


class AgentNotReadyError(ForkmeshError):
    """Raised when work is submitted to an agent that is not running."""


class InvalidTransitionError(ForkmeshError):
    def __init__(self, agent_id: str, current: str, target: str) -> None:
        super().__init__(f"Agent {agent_id} cannot move from '{current}' to '{target}'")
        self.agent_id = agent_id
        self.current = current
        self.target = target


class SyncJobConflictError(ForkmeshError):
    """Another execution already holds the sync job."""


class SyncError(ForkmeshError):
    pass


class ForkProviderError(ForkmeshError):
    """A fork control-plane call failed."""
