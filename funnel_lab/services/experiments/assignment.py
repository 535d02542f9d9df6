"""
Session-to-variant assignment and exposure tracking.

Assignment is idempotent per (experiment, session): the first eligible
request for a running experiment buckets the session and persists the
decision; every later request reads it back. Sessions outside a running
experiment get the control experience and are never recorded.

The store is the only shared state. Two first requests can race; the
unique constraint on the assignment table lets exactly one insert win and
the loser re-reads the winner's row.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS
from funnel_lab.core.errors import PersistenceUnavailableError
from funnel_lab.models.experiment import Experiment, ExperimentAssignment, Variant
from funnel_lab.services.experiments.bucketing import bucket, bucket_for
from funnel_lab.services.experiments.lifecycle import accepts_assignments

logger = structlog.get_logger()


@dataclass
class AssignmentResult:
    variant_id: str
    already_assigned: bool


@dataclass
class VariantCounts:
    variant_id: str
    total_assigned: int
    total_exposed: int


def choose_variant(session_id: str, control_percent: int) -> str:
    return Variant.CONTROL.value if bucket(session_id) < control_percent else Variant.TREATMENT.value


def is_eligible(session_id: str, experiment_id: str, traffic_percent: int) -> bool:
    """Traffic gate, bucketed independently of the control/treatment split."""
    if traffic_percent >= 100:
        return True
    return bucket_for(session_id, experiment_id) < traffic_percent


class AssignmentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find(self, experiment_id: str, session_id: str) -> Optional[ExperimentAssignment]:
        result = await self.db.execute(
            select(ExperimentAssignment)
            .where(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.session_id == session_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_assignment(
        self, experiment_id: str, session_id: str
    ) -> Optional[ExperimentAssignment]:
        try:
            return await self._find(experiment_id, session_id)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("get_assignment", e) from e

    async def assign(
        self, experiment_id: str, session_id: str, user_id: Optional[str] = None
    ) -> AssignmentResult:
        log = logger.bind(experiment_id=experiment_id, session_id=session_id)

        try:
            existing = await self._find(experiment_id, session_id)
            if existing is not None:
                return AssignmentResult(variant_id=existing.variant_id, already_assigned=True)

            result = await self.db.execute(select(Experiment).where(Experiment.id == experiment_id))
            experiment = result.scalar_one_or_none()
        except STORE_UNAVAILABLE_ERRORS as e:
            # Unresolvable context falls back to the control experience
            log.warning("assignment_read_failed", error=str(e))
            return AssignmentResult(variant_id=Variant.CONTROL.value, already_assigned=False)

        if experiment is None or not accepts_assignments(experiment.status):
            return AssignmentResult(variant_id=Variant.CONTROL.value, already_assigned=False)

        if not is_eligible(session_id, experiment_id, experiment.traffic_percent):
            return AssignmentResult(variant_id=Variant.CONTROL.value, already_assigned=False)

        variant_id = choose_variant(session_id, experiment.control_percent)

        assignment = ExperimentAssignment(
            experiment_id=experiment_id,
            session_id=session_id,
            user_id=user_id,
            variant_id=variant_id,
            assigned_at=datetime.now(timezone.utc),
            exposed=False,
        )

        try:
            self.db.add(assignment)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self._reread_after_conflict(experiment_id, session_id)
            if winner is not None:
                log.info("assignment_race_resolved", variant_id=winner.variant_id)
                return AssignmentResult(variant_id=winner.variant_id, already_assigned=True)
            log.warning("assignment_conflict_without_row", variant_id=variant_id)
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            # Fail open: the decision is still valid for this call
            log.warning("assignment_persist_failed", variant_id=variant_id, error=str(e))
        else:
            log.info("session_assigned", variant_id=variant_id, user_id=user_id)

        return AssignmentResult(variant_id=variant_id, already_assigned=False)

    async def _reread_after_conflict(
        self, experiment_id: str, session_id: str
    ) -> Optional[ExperimentAssignment]:
        try:
            return await self._find(experiment_id, session_id)
        except STORE_UNAVAILABLE_ERRORS as e:
            logger.warning(
                "assignment_reread_failed",
                experiment_id=experiment_id,
                session_id=session_id,
                error=str(e),
            )
            return None

    async def mark_exposure(self, experiment_id: str, session_id: str) -> bool:
        """
        Record the first exposure of an assigned session.

        The update only matches rows that are not yet exposed, so repeated
        calls keep the first exposed_at. Returns True when this call
        recorded the exposure.
        """
        stmt = (
            update(ExperimentAssignment)
            .where(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.session_id == session_id,
                ExperimentAssignment.exposed.is_(False),
            )
            .values(exposed=True, exposed_at=datetime.now(timezone.utc))
        )

        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            raise PersistenceUnavailableError("mark_exposure", e) from e

        recorded = result.rowcount > 0
        if recorded:
            logger.info("session_exposed", experiment_id=experiment_id, session_id=session_id)
        return recorded

    async def get_assignment_stats(self, experiment_id: str) -> List[VariantCounts]:
        exposed_count = func.sum(case((ExperimentAssignment.exposed.is_(True), 1), else_=0))
        stmt = (
            select(
                ExperimentAssignment.variant_id,
                func.count(ExperimentAssignment.id).label("total_assigned"),
                func.coalesce(exposed_count, 0).label("total_exposed"),
            )
            .where(ExperimentAssignment.experiment_id == experiment_id)
            .group_by(ExperimentAssignment.variant_id)
            .order_by(ExperimentAssignment.variant_id)
        )

        try:
            result = await self.db.execute(stmt)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("get_assignment_stats", e) from e

        return [
            VariantCounts(
                variant_id=row.variant_id,
                total_assigned=int(row.total_assigned),
                total_exposed=int(row.total_exposed or 0),
            )
            for row in result.all()
        ]
