"""Error types shared by the stores and their backends."""

from __future__ import annotations


class BackendError(RuntimeError):
    """Raised when the structured data backend rejects or fails a call."""


class NotFoundError(BackendError):
    pass


class ProvisioningError(BackendError):
    """Raised when the table provisioning collaborator fails."""


class InvalidTransition(ValueError):
    pass
