from funnel_lab.models.experiment import (  # noqa: F401
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
    Variant,
)
from funnel_lab.models.tracking_event import TrackingEvent, TrackingEventName  # noqa: F401
