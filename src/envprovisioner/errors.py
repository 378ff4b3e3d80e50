"""Error taxonomy shared by the lifecycle manager, orchestrator and reconciler."""
from __future__ import annotations

from typing import Optional


class ProvisionerError(Exception):
    """Base class for all errors raised by the provisioner core."""


class ValidationError(ProvisionerError):
    """Input was malformed or out of range; nothing was persisted."""


class NotFoundError(ProvisionerError):
    """The requested record does not exist or has been soft-deleted."""


class ConflictError(ProvisionerError):
    """A conditional write lost a race, a workflow is in flight, or a transition is illegal."""


class PersistenceError(ProvisionerError):
    """The record store could not be reached."""


class ExecutionError(ProvisionerError):
    """An external tool or cluster API call failed."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.step = step
        self.returncode = returncode
        self.stderr = stderr.strip()
        if self.stderr:
            message = f"{message}, stderr: {self.stderr}"
        super().__init__(message)


__all__ = [
    "ProvisionerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "ExecutionError",
]
