from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.api.v1.errors import http_error
from funnel_lab.core.database import get_db
from funnel_lab.core.errors import FunnelLabError
from funnel_lab.models.experiment import ExperimentStatus
from funnel_lab.models.schemas import (
    AssignmentStatsResponse,
    AssignRequest,
    AssignResponse,
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentResponse,
    ExperimentResultResponse,
    ExperimentStatusEnum,
    ExposureRequest,
    ExposureResponse,
    LiftResponse,
    SRMResponse,
    UpdateExperimentRequest,
    UpdateStatusRequest,
    VariantAssignmentStats,
    VariantEnum,
)
from funnel_lab.models.tracking_event import TrackingEventName
from funnel_lab.services.experiments.analysis import ExperimentAnalysisService
from funnel_lab.services.experiments.assignment import AssignmentService
from funnel_lab.services.experiments.service import ExperimentService

router = APIRouter()


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(request: CreateExperimentRequest, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    try:
        experiment = await service.create_experiment(request)
    except FunnelLabError as e:
        raise http_error(e)
    return service.to_response(experiment)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status: Optional[ExperimentStatusEnum] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    service = ExperimentService(db)
    try:
        experiments = await service.list_experiments(status=status, limit=limit, offset=offset)
    except FunnelLabError as e:
        raise http_error(e)

    return ExperimentListResponse(
        experiments=[service.to_response(e) for e in experiments], total=len(experiments)
    )


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(experiment_id: str, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    try:
        experiment = await service.get_experiment(experiment_id)
    except FunnelLabError as e:
        raise http_error(e)
    return service.to_response(experiment)


@router.patch("/{experiment_id}", response_model=ExperimentResponse)
async def update_experiment(
    experiment_id: str, request: UpdateExperimentRequest, db: AsyncSession = Depends(get_db)
):
    service = ExperimentService(db)
    try:
        experiment = await service.update_experiment(experiment_id, request)
    except FunnelLabError as e:
        raise http_error(e)
    return service.to_response(experiment)


@router.post("/{experiment_id}/status", response_model=ExperimentResponse)
async def change_status(
    experiment_id: str, request: UpdateStatusRequest, db: AsyncSession = Depends(get_db)
):
    service = ExperimentService(db)
    try:
        experiment = await service.transition(experiment_id, ExperimentStatus(request.status.value))
    except FunnelLabError as e:
        raise http_error(e)
    return service.to_response(experiment)


@router.post("/{experiment_id}/assign", response_model=AssignResponse)
async def assign_variant(
    experiment_id: str, request: AssignRequest, db: AsyncSession = Depends(get_db)
):
    """Assign a session to a variant. Never fails: unknown or stopped experiments serve control."""
    service = AssignmentService(db)
    result = await service.assign(experiment_id, request.session_id, request.user_id)

    return AssignResponse(
        experiment_id=experiment_id,
        session_id=request.session_id,
        variant_id=VariantEnum(result.variant_id),
        already_assigned=result.already_assigned,
    )


@router.post("/{experiment_id}/exposure", response_model=ExposureResponse)
async def mark_exposure(
    experiment_id: str, request: ExposureRequest, db: AsyncSession = Depends(get_db)
):
    service = AssignmentService(db)
    try:
        recorded = await service.mark_exposure(experiment_id, request.session_id)
    except FunnelLabError as e:
        raise http_error(e)

    return ExposureResponse(
        experiment_id=experiment_id, session_id=request.session_id, recorded=recorded
    )


@router.get("/{experiment_id}/stats", response_model=AssignmentStatsResponse)
async def get_assignment_stats(experiment_id: str, db: AsyncSession = Depends(get_db)):
    try:
        await ExperimentService(db).get_experiment(experiment_id)
        counts = await AssignmentService(db).get_assignment_stats(experiment_id)
    except FunnelLabError as e:
        raise http_error(e)

    return AssignmentStatsResponse(
        experiment_id=experiment_id,
        variants=[VariantAssignmentStats(**asdict(c)) for c in counts],
    )


@router.get("/{experiment_id}/analysis", response_model=ExperimentResultResponse)
async def analyze_experiment(
    experiment_id: str,
    conversion_event: str = Query(TrackingEventName.PAY_SUCCESS.value),
    exposed_only: bool = Query(False, description="Only count exposed sessions"),
    db: AsyncSession = Depends(get_db),
):
    service = ExperimentAnalysisService(db)
    try:
        result = await service.analyze(
            experiment_id, conversion_event=conversion_event, exposed_only=exposed_only
        )
    except (FunnelLabError, ValueError) as e:
        raise http_error(e)

    return ExperimentResultResponse(
        experiment_id=result.experiment_id,
        status=ExperimentStatusEnum(result.status.value),
        conversion_event=result.conversion_event,
        exposed_only=result.exposed_only,
        lift=LiftResponse(**asdict(result.lift)),
        srm=SRMResponse(**asdict(result.srm)),
        guardrail_warnings=result.guardrail_warnings,
        computed_at=result.computed_at,
    )
