"""
Error kinds raised by the experimentation core.

Callers (the HTTP layer, dashboards, batch jobs) map these to their own
responses. Nothing here is retried internally.
"""

from typing import Optional


class FunnelLabError(Exception):
    """Base class for all experimentation errors."""


class NotFoundError(FunnelLabError):
    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} '{identifier}' not found")


class InvalidTransitionError(FunnelLabError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition experiment from '{current}' to '{target}'")


class ExperimentNotEditableError(FunnelLabError):
    def __init__(self, experiment_id: str, status: str):
        self.experiment_id = experiment_id
        self.status = status
        super().__init__(
            f"Experiment '{experiment_id}' is {status}; configuration can only be edited in draft"
        )


class UnsupportedParameterError(FunnelLabError, ValueError):
    """A confidence/power value outside the supported lookup table."""

    def __init__(self, parameter: str, value: float, supported: Optional[list] = None):
        self.parameter = parameter
        self.value = value
        self.supported = supported or []
        message = f"Unsupported {parameter}: {value}"
        if self.supported:
            message += f" (supported: {', '.join(str(s) for s in self.supported)})"
        super().__init__(message)


class PersistenceUnavailableError(FunnelLabError):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        message = f"Experiment store unavailable during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
