import enum

from sqlalchemy import JSON, Boolean, Column, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from funnel_lab.core.database import Base


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class Variant(str, enum.Enum):
    CONTROL = "control"
    TREATMENT = "treatment"


class Experiment(Base):
    """
    Represents an A/B experiment definition.

    Holds the hypothesis, metrics, traffic split and the statistical targets
    used by the sample size calculator and the lift analysis. Rows are never
    deleted; completed experiments stay for audit.
    """

    __tablename__ = "experiments"

    id = Column(String(64), primary_key=True)

    # Experiment definition
    name = Column(String(256), nullable=False)
    description = Column(Text)
    hypothesis = Column(Text)

    # Traffic allocation (percent of sessions)
    traffic_percent = Column(Integer, nullable=False, default=100)
    control_percent = Column(Integer, nullable=False, default=50)

    # Targeting (informational, evaluated by the calling surface)
    target_countries = Column(JSON)
    target_user_types = Column(JSON)

    # Metrics
    primary_metric = Column(String(64), nullable=False, default="pay_cvr")
    secondary_metrics = Column(JSON)
    guardrail_metrics = Column(JSON)

    # Statistical targets
    mde_percent = Column(Float, nullable=False, default=1.5)
    confidence_level = Column(Float, nullable=False, default=0.95)
    statistical_power = Column(Float, nullable=False, default=0.80)
    attribution_window_hours = Column(Integer, nullable=False, default=24)

    # Lifecycle
    status = Column(SQLEnum(ExperimentStatus), nullable=False, default=ExperimentStatus.DRAFT)
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ExperimentAssignment(Base):
    """
    Which variant a session was bucketed into for one experiment.

    The (experiment_id, session_id) unique constraint is what keeps
    assignment idempotent when two first requests race each other.
    """

    __tablename__ = "experiment_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(64), ForeignKey("experiments.id"), nullable=False)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(64))
    variant_id = Column(String(32), nullable=False)
    assigned_at = Column(DateTime(timezone=True), server_default=func.now())

    # Exposure tracking
    exposed = Column(Boolean, nullable=False, default=False)
    exposed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("experiment_id", "session_id", name="uq_assignment_experiment_session"),
        Index("ix_assignments_experiment_variant", "experiment_id", "variant_id"),
    )
