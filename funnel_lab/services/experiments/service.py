import uuid
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS
from funnel_lab.core.errors import (
    ExperimentNotEditableError,
    NotFoundError,
    PersistenceUnavailableError,
)
from funnel_lab.models.experiment import Experiment, ExperimentStatus
from funnel_lab.models.schemas import (
    CreateExperimentRequest,
    ExperimentResponse,
    ExperimentStatusEnum,
    UpdateExperimentRequest,
)
from funnel_lab.services.experiments.lifecycle import is_editable, validate_transition

logger = structlog.get_logger()


def new_experiment_id() -> str:
    return f"exp_{uuid.uuid4().hex[:12]}"


class ExperimentService:
    """Operator-facing experiment configuration and lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_experiment(self, request: CreateExperimentRequest) -> Experiment:
        experiment = Experiment(
            id=new_experiment_id(),
            name=request.name,
            description=request.description,
            hypothesis=request.hypothesis,
            traffic_percent=request.traffic_percent,
            control_percent=request.control_percent,
            target_countries=request.target_countries,
            target_user_types=request.target_user_types,
            primary_metric=request.primary_metric,
            secondary_metrics=request.secondary_metrics,
            guardrail_metrics=request.guardrail_metrics,
            mde_percent=request.mde_percent,
            confidence_level=request.confidence_level,
            statistical_power=request.statistical_power,
            attribution_window_hours=request.attribution_window_hours,
            status=ExperimentStatus.DRAFT,
        )

        try:
            self.db.add(experiment)
            await self.db.commit()
            await self.db.refresh(experiment)
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            raise PersistenceUnavailableError("create_experiment", e) from e

        logger.info("experiment_created", experiment_id=experiment.id, name=experiment.name)
        return experiment

    async def find_experiment(self, experiment_id: str) -> Optional[Experiment]:
        try:
            result = await self.db.execute(select(Experiment).where(Experiment.id == experiment_id))
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("get_experiment", e) from e
        return result.scalar_one_or_none()

    async def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self.find_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)
        return experiment

    async def list_experiments(
        self,
        status: Optional[ExperimentStatusEnum] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Experiment]:
        query = select(Experiment).order_by(Experiment.created_at.desc()).limit(limit).offset(offset)

        if status:
            query = query.where(Experiment.status == ExperimentStatus(status.value))

        try:
            result = await self.db.execute(query)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("list_experiments", e) from e
        return list(result.scalars().all())

    async def update_experiment(
        self, experiment_id: str, request: UpdateExperimentRequest
    ) -> Experiment:
        """Edit configuration. Only drafts can change; a running split must stay fixed."""
        experiment = await self.get_experiment(experiment_id)
        if not is_editable(experiment.status):
            raise ExperimentNotEditableError(experiment_id, experiment.status.value)

        for field_name, value in request.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(experiment, field_name, value)

        try:
            await self.db.commit()
            await self.db.refresh(experiment)
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            raise PersistenceUnavailableError("update_experiment", e) from e

        return experiment

    async def transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        previous = experiment.status
        new_status = validate_transition(previous, target)

        now = datetime.now(timezone.utc)
        experiment.status = new_status
        if new_status == ExperimentStatus.RUNNING and experiment.start_date is None:
            experiment.start_date = now
        if new_status == ExperimentStatus.COMPLETED:
            experiment.end_date = now

        try:
            await self.db.commit()
            await self.db.refresh(experiment)
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            raise PersistenceUnavailableError("transition", e) from e

        logger.info(
            "experiment_status_changed",
            experiment_id=experiment_id,
            previous=previous.value,
            status=new_status.value,
        )
        return experiment

    async def start(self, experiment_id: str) -> Experiment:
        return await self.transition(experiment_id, ExperimentStatus.RUNNING)

    async def pause(self, experiment_id: str) -> Experiment:
        return await self.transition(experiment_id, ExperimentStatus.PAUSED)

    async def complete(self, experiment_id: str) -> Experiment:
        return await self.transition(experiment_id, ExperimentStatus.COMPLETED)

    def to_response(self, experiment: Experiment) -> ExperimentResponse:
        return ExperimentResponse(
            id=experiment.id,
            name=experiment.name,
            description=experiment.description,
            hypothesis=experiment.hypothesis,
            status=ExperimentStatusEnum(experiment.status.value),
            traffic_percent=experiment.traffic_percent,
            control_percent=experiment.control_percent,
            target_countries=experiment.target_countries,
            target_user_types=experiment.target_user_types,
            primary_metric=experiment.primary_metric,
            secondary_metrics=experiment.secondary_metrics,
            guardrail_metrics=experiment.guardrail_metrics,
            mde_percent=experiment.mde_percent,
            confidence_level=experiment.confidence_level,
            statistical_power=experiment.statistical_power,
            attribution_window_hours=experiment.attribution_window_hours,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            created_at=experiment.created_at,
            updated_at=experiment.updated_at,
        )
