from dataclasses import asdict
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.api.v1.errors import http_error
from funnel_lab.core.database import get_db
from funnel_lab.core.errors import FunnelLabError
from funnel_lab.models.schemas import (
    DailyFunnelStatResponse,
    EventCountResponse,
    FunnelRequest,
    FunnelResponse,
    FunnelStageResponse,
    KPIResponse,
    TrackingEventCreate,
    TrackingEventResponse,
)
from funnel_lab.services.analytics.aggregator import FunnelAggregator, FunnelStage
from funnel_lab.services.analytics.tracking import EventLedger

router = APIRouter()


@router.post("/events", response_model=TrackingEventResponse, status_code=201)
async def record_event(event: TrackingEventCreate, db: AsyncSession = Depends(get_db)):
    try:
        return await EventLedger(db).record(event)
    except FunnelLabError as e:
        raise http_error(e)


@router.get("/events", response_model=List[TrackingEventResponse])
async def get_events(
    event_name: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    experiment_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(1000, ge=1, le=10000),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await EventLedger(db).get_events(
            event_name=event_name,
            session_id=session_id,
            user_id=user_id,
            experiment_id=experiment_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
    except FunnelLabError as e:
        raise http_error(e)


@router.post("/funnel", response_model=FunnelResponse)
async def funnel_metrics(request: FunnelRequest, db: AsyncSession = Depends(get_db)):
    stages = None
    if request.stages:
        stages = [FunnelStage(s.name, s.event_name) for s in request.stages]

    try:
        results = await FunnelAggregator(db).funnel_metrics(
            stages, experiment_id=request.experiment_id, variant_id=request.variant_id
        )
    except FunnelLabError as e:
        raise http_error(e)

    return FunnelResponse(
        experiment_id=request.experiment_id,
        variant_id=request.variant_id,
        stages=[FunnelStageResponse(**asdict(r)) for r in results],
    )


@router.get("/funnel/variants", response_model=Dict[str, List[FunnelStageResponse]])
async def funnel_by_variant(
    experiment_id: str = Query(..., description="Experiment to split by variant"),
    db: AsyncSession = Depends(get_db),
):
    try:
        funnels = await FunnelAggregator(db).funnel_by_variant(experiment_id=experiment_id)
    except FunnelLabError as e:
        raise http_error(e)

    return {
        variant: [FunnelStageResponse(**asdict(r)) for r in results]
        for variant, results in funnels.items()
    }


@router.get("/daily", response_model=List[DailyFunnelStatResponse])
async def daily_funnel_stats(
    start_date: date = Query(...),
    end_date: date = Query(...),
    experiment_id: Optional[str] = Query(None),
    event_names: Optional[List[str]] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    try:
        stats = await FunnelAggregator(db).daily_funnel_stats(
            start_date, end_date, experiment_id=experiment_id, event_names=event_names
        )
    except FunnelLabError as e:
        raise http_error(e)

    return [DailyFunnelStatResponse(**asdict(s)) for s in stats]


@router.get("/counts", response_model=List[EventCountResponse])
async def event_counts(
    experiment_id: Optional[str] = Query(None), db: AsyncSession = Depends(get_db)
):
    try:
        counts = await FunnelAggregator(db).event_counts(experiment_id=experiment_id)
    except FunnelLabError as e:
        raise http_error(e)

    return [EventCountResponse(**asdict(c)) for c in counts]


@router.get("/kpis", response_model=List[KPIResponse])
async def kpi_metrics(
    experiment_id: Optional[str] = Query(None),
    variant_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    try:
        values = await FunnelAggregator(db).kpi_metrics(
            experiment_id=experiment_id, variant_id=variant_id
        )
    except FunnelLabError as e:
        raise http_error(e)

    return [KPIResponse(**asdict(v)) for v in values]
