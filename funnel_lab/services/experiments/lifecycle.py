"""
Experiment lifecycle state machine.

    draft -> running <-> paused
    running -> completed, paused -> completed

An experiment has to run at least once before it can complete, and
completed is terminal. Only running experiments hand out new assignments.
"""

from typing import Dict, FrozenSet, Union

from funnel_lab.core.errors import InvalidTransitionError
from funnel_lab.models.experiment import ExperimentStatus

ALLOWED_TRANSITIONS: Dict[ExperimentStatus, FrozenSet[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset({ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED}),
    ExperimentStatus.PAUSED: frozenset({ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED}),
    ExperimentStatus.COMPLETED: frozenset(),
}


def _as_status(value: Union[ExperimentStatus, str]) -> ExperimentStatus:
    return value if isinstance(value, ExperimentStatus) else ExperimentStatus(value)


def can_transition(
    current: Union[ExperimentStatus, str], target: Union[ExperimentStatus, str]
) -> bool:
    return _as_status(target) in ALLOWED_TRANSITIONS[_as_status(current)]


def validate_transition(
    current: Union[ExperimentStatus, str], target: Union[ExperimentStatus, str]
) -> ExperimentStatus:
    """Return the target status, or raise InvalidTransitionError."""
    current_status = _as_status(current)
    target_status = _as_status(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status.value, target_status.value)
    return target_status


def accepts_assignments(status: Union[ExperimentStatus, str, None]) -> bool:
    return status is not None and _as_status(status) == ExperimentStatus.RUNNING


def is_editable(status: Union[ExperimentStatus, str]) -> bool:
    return _as_status(status) == ExperimentStatus.DRAFT
