"""
Read-only analysis of a live or finished experiment.

Users per arm come from the assignment table; conversions are distinct
sessions that fired the conversion event while tagged with the experiment
and arm. Nothing is stored: each call recomputes from the current data.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.config import get_settings
from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS
from funnel_lab.core.errors import PersistenceUnavailableError
from funnel_lab.models.experiment import (
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
    Variant,
)
from funnel_lab.models.tracking_event import TrackingEvent, TrackingEventName
from funnel_lab.services.experiments.assignment import AssignmentService
from funnel_lab.services.experiments.service import ExperimentService
from funnel_lab.services.experiments.stats import (
    LiftAnalysis,
    SRMResult,
    VariantData,
    allocation_from_control_percent,
    analyze_lift,
    srm_check,
)

logger = structlog.get_logger()


@dataclass
class ExperimentResult:
    experiment_id: str
    status: ExperimentStatus
    conversion_event: str
    exposed_only: bool
    lift: LiftAnalysis
    srm: SRMResult
    guardrail_warnings: List[str] = field(default_factory=list)
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExperimentAnalysisService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.experiments = ExperimentService(db)
        self.assignments = AssignmentService(db)

    async def _conversions_by_variant(
        self, experiment: Experiment, conversion_event: str, exposed_only: bool
    ) -> Dict[str, int]:
        stmt = (
            select(
                TrackingEvent.variant_id,
                func.count(distinct(TrackingEvent.session_id)).label("sessions"),
            )
            .where(
                TrackingEvent.experiment_id == experiment.id,
                TrackingEvent.event_name == conversion_event,
                TrackingEvent.variant_id.isnot(None),
            )
            .group_by(TrackingEvent.variant_id)
        )

        if exposed_only:
            exposed_sessions = select(ExperimentAssignment.session_id).where(
                ExperimentAssignment.experiment_id == experiment.id,
                ExperimentAssignment.exposed.is_(True),
            )
            stmt = stmt.where(TrackingEvent.session_id.in_(exposed_sessions))

        try:
            result = await self.db.execute(stmt)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("experiment_conversions", e) from e

        return {row.variant_id: int(row.sessions) for row in result.all()}

    async def analyze(
        self,
        experiment_id: str,
        conversion_event: str = TrackingEventName.PAY_SUCCESS.value,
        exposed_only: bool = False,
    ) -> ExperimentResult:
        """
        Lift and sample-ratio check for one experiment.

        With ``exposed_only`` both users and conversions are limited to
        sessions that actually saw their variant. A failed SRM check is
        reported as a guardrail warning; the lift is still returned but
        should not be trusted.
        """
        experiment = await self.experiments.get_experiment(experiment_id)
        counts = {c.variant_id: c for c in await self.assignments.get_assignment_stats(experiment_id)}
        conversions = await self._conversions_by_variant(experiment, conversion_event, exposed_only)

        def users(variant: str) -> int:
            row = counts.get(variant)
            if row is None:
                return 0
            return row.total_exposed if exposed_only else row.total_assigned

        control_name = Variant.CONTROL.value
        treatment_name = Variant.TREATMENT.value

        control = VariantData(
            name=control_name,
            users=users(control_name),
            conversions=min(conversions.get(control_name, 0), users(control_name)),
            is_control=True,
        )
        treatment = VariantData(
            name=treatment_name,
            users=users(treatment_name),
            conversions=min(conversions.get(treatment_name, 0), users(treatment_name)),
        )

        lift = analyze_lift(control, treatment, experiment.confidence_level)
        srm = srm_check(
            {control_name: control.users, treatment_name: treatment.users},
            allocation_from_control_percent(experiment.control_percent),
            alpha=get_settings().SRM_ALPHA,
        )

        log = logger.bind(experiment_id=experiment_id, conversion_event=conversion_event)
        warnings: List[str] = []
        if not srm.passed:
            warnings.append(
                f"Sample ratio mismatch (chi2={srm.chi2:.3f}, p={srm.p_value:.4f}); "
                "lift results are unreliable"
            )
            log.warning("srm_check_failed", chi2=srm.chi2, p_value=srm.p_value, alpha=srm.alpha)

        result = ExperimentResult(
            experiment_id=experiment_id,
            status=experiment.status,
            conversion_event=conversion_event,
            exposed_only=exposed_only,
            lift=lift,
            srm=srm,
            guardrail_warnings=warnings,
        )

        log.info(
            "experiment_analysis_computed",
            exposed_only=exposed_only,
            control_users=control.users,
            treatment_users=treatment.users,
            relative_lift=lift.relative_lift,
            p_value=lift.p_value,
            significant=lift.significant,
            srm_passed=srm.passed,
        )
        return result
