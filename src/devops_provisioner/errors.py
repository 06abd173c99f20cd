"""Exception types raised while provisioning."""

from __future__ import annotations

from typing import Optional


class ProvisioningError(RuntimeError):
    """Base class for all provisioning failures."""


class CloudError(ProvisioningError):
    """Raised when a call to the cloud platform fails."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        self.status = status
        self.code = code
        super().__init__(message)


class NameConflictError(CloudError):
    """The platform rejected a display name that is already in use."""


class ResourceNotFoundError(CloudError):
    """A referenced resource does not exist (anymore)."""


class WorkRequestError(CloudError):
    """An asynchronous work request failed, was cancelled or timed out."""


class PreconditionError(ProvisioningError):
    """A folder or the target environment cannot be provisioned as is."""


class DeploymentCancelled(ProvisioningError):
    """The user declined to provide a required value."""


class StepFailedError(ProvisioningError):
    """A provisioning step failed; carries the user-facing message."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        self.cause = cause
        if cause is not None and str(cause):
            message = f"{message}: {cause}"
        super().__init__(message)


def is_name_conflict(message: str) -> bool:
    """Recognise the platform's wording for duplicate display names."""
    lowered = message.lower()
    return "already exists" in lowered or "already uses this display name" in lowered
