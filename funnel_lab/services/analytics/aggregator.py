"""
Funnel aggregation over the event ledger.

Stage counts are distinct sessions, not raw events, so a session that fires
the same event ten times still counts once. Nothing is cached: every call
reads the ledger as it is at that moment.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS
from funnel_lab.core.errors import PersistenceUnavailableError
from funnel_lab.models.tracking_event import TrackingEvent, TrackingEventName


@dataclass(frozen=True)
class FunnelStage:
    name: str
    event_name: str


@dataclass
class FunnelStageResult:
    name: str
    event_name: str
    count: int
    conversion_rate: Optional[float] = None  # count / previous stage count
    dropoff_rate: Optional[float] = None


@dataclass
class DailyFunnelStat:
    date: date
    event_name: str
    variant_id: Optional[str]
    event_count: int
    unique_sessions: int


@dataclass
class EventCount:
    event_name: str
    variant_id: Optional[str]
    count: int


@dataclass(frozen=True)
class KPIDefinition:
    name: str
    kpi_type: str  # north_star, driver, guardrail
    numerator_event: str
    denominator_event: str
    description: str = ""


@dataclass
class KPIValue:
    key: str
    name: str
    kpi_type: str
    numerator_event: str
    denominator_event: str
    numerator: int
    denominator: int
    value: Optional[float]


DEFAULT_FUNNEL_STAGES: List[FunnelStage] = [
    FunnelStage("Search results", TrackingEventName.SEARCH_RESULT_VIEW.value),
    FunnelStage("Hotel detail", TrackingEventName.HOTEL_DETAIL_VIEW.value),
    FunnelStage("Booking started", TrackingEventName.BOOKING_START.value),
    FunnelStage("Booking submitted", TrackingEventName.BOOKING_SUBMIT.value),
    FunnelStage("Paid", TrackingEventName.PAY_SUCCESS.value),
]

KPI_DEFINITIONS: Dict[str, KPIDefinition] = {
    "pay_cvr": KPIDefinition(
        name="Pay CVR",
        kpi_type="north_star",
        numerator_event=TrackingEventName.PAY_SUCCESS.value,
        denominator_event=TrackingEventName.HOTEL_DETAIL_VIEW.value,
        description="Payment conversion rate",
    ),
    "order_cvr": KPIDefinition(
        name="Order CVR",
        kpi_type="north_star",
        numerator_event=TrackingEventName.BOOKING_SUBMIT.value,
        denominator_event=TrackingEventName.HOTEL_DETAIL_VIEW.value,
        description="Order creation rate",
    ),
    "detail_to_booking_ctr": KPIDefinition(
        name="Detail to Booking CTR",
        kpi_type="driver",
        numerator_event=TrackingEventName.BOOKING_START.value,
        denominator_event=TrackingEventName.HOTEL_DETAIL_VIEW.value,
    ),
    "ai_summary_ctr": KPIDefinition(
        name="AI Summary CTR",
        kpi_type="driver",
        numerator_event=TrackingEventName.POLICY_DIGEST_EXPAND.value,
        denominator_event=TrackingEventName.POLICY_DIGEST_IMPRESSION.value,
    ),
    "cancellation_rate": KPIDefinition(
        name="Cancellation Rate",
        kpi_type="guardrail",
        numerator_event=TrackingEventName.ORDER_CANCEL.value,
        denominator_event=TrackingEventName.PAY_SUCCESS.value,
    ),
    "contact_rate": KPIDefinition(
        name="Contact Rate",
        kpi_type="guardrail",
        numerator_event=TrackingEventName.CONTACT_CLICK.value,
        denominator_event=TrackingEventName.HOTEL_DETAIL_VIEW.value,
    ),
}


def ratio(numerator: int, denominator: int) -> Optional[float]:
    if denominator == 0:
        return None
    return numerator / denominator


def compute_funnel(
    stages: Sequence[FunnelStage], counts: Mapping[str, int]
) -> List[FunnelStageResult]:
    """
    Stage-by-stage conversion from distinct-session counts keyed by event name.

    The first stage has no rates. A stage following an empty stage gets
    None for both rates instead of a division by zero.
    """
    results: List[FunnelStageResult] = []
    previous: Optional[int] = None

    for stage in stages:
        count = int(counts.get(stage.event_name, 0))
        result = FunnelStageResult(name=stage.name, event_name=stage.event_name, count=count)

        if previous:
            result.conversion_rate = count / previous
            result.dropoff_rate = (previous - count) / previous

        results.append(result)
        previous = count

    return results


def _as_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _range_start(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _range_end(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


class FunnelAggregator:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _execute(self, stmt, operation: str):
        try:
            return await self.db.execute(stmt)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError(operation, e) from e

    async def distinct_sessions_by_event(
        self,
        event_names: Iterable[str],
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> Dict[str, int]:
        names = sorted(set(event_names))
        if not names:
            return {}

        stmt = (
            select(
                TrackingEvent.event_name,
                func.count(distinct(TrackingEvent.session_id)).label("sessions"),
            )
            .where(TrackingEvent.event_name.in_(names))
            .group_by(TrackingEvent.event_name)
        )
        if experiment_id:
            stmt = stmt.where(TrackingEvent.experiment_id == experiment_id)
        if variant_id:
            stmt = stmt.where(TrackingEvent.variant_id == variant_id)

        result = await self._execute(stmt, "funnel_metrics")
        return {row.event_name: int(row.sessions) for row in result.all()}

    async def funnel_metrics(
        self,
        stages: Optional[Sequence[FunnelStage]] = None,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> List[FunnelStageResult]:
        stages = list(stages or DEFAULT_FUNNEL_STAGES)
        counts = await self.distinct_sessions_by_event(
            (stage.event_name for stage in stages), experiment_id, variant_id
        )
        return compute_funnel(stages, counts)

    async def funnel_by_variant(
        self,
        stages: Optional[Sequence[FunnelStage]] = None,
        experiment_id: Optional[str] = None,
    ) -> Dict[str, List[FunnelStageResult]]:
        """One funnel per variant seen on the experiment's events."""
        stages = list(stages or DEFAULT_FUNNEL_STAGES)

        stmt = (
            select(
                TrackingEvent.variant_id,
                TrackingEvent.event_name,
                func.count(distinct(TrackingEvent.session_id)).label("sessions"),
            )
            .where(
                TrackingEvent.event_name.in_({stage.event_name for stage in stages}),
                TrackingEvent.variant_id.isnot(None),
            )
            .group_by(TrackingEvent.variant_id, TrackingEvent.event_name)
        )
        if experiment_id:
            stmt = stmt.where(TrackingEvent.experiment_id == experiment_id)

        result = await self._execute(stmt, "funnel_by_variant")

        counts_by_variant: Dict[str, Dict[str, int]] = defaultdict(dict)
        for row in result.all():
            counts_by_variant[row.variant_id][row.event_name] = int(row.sessions)

        return {
            variant: compute_funnel(stages, counts)
            for variant, counts in sorted(counts_by_variant.items())
        }

    async def daily_funnel_stats(
        self,
        start_date: Union[date, datetime],
        end_date: Union[date, datetime],
        experiment_id: Optional[str] = None,
        event_names: Optional[Iterable[str]] = None,
    ) -> List[DailyFunnelStat]:
        """
        Per-day, per-event, per-variant counts for trend views.

        Plain dates are inclusive whole days (UTC). ``unique_sessions`` is
        de-duplicated within each (day, event, variant) group.
        """
        day = func.date(TrackingEvent.timestamp).label("day")
        stmt = (
            select(
                day,
                TrackingEvent.event_name,
                TrackingEvent.variant_id,
                func.count(TrackingEvent.id).label("event_count"),
                func.count(distinct(TrackingEvent.session_id)).label("unique_sessions"),
            )
            .where(
                TrackingEvent.timestamp >= _range_start(start_date),
                TrackingEvent.timestamp <= _range_end(end_date),
            )
            .group_by(day, TrackingEvent.event_name, TrackingEvent.variant_id)
            .order_by(day, TrackingEvent.event_name, TrackingEvent.variant_id)
        )
        if experiment_id:
            stmt = stmt.where(TrackingEvent.experiment_id == experiment_id)
        if event_names:
            stmt = stmt.where(TrackingEvent.event_name.in_(set(event_names)))

        result = await self._execute(stmt, "daily_funnel_stats")

        return [
            DailyFunnelStat(
                date=_as_date(row.day),
                event_name=row.event_name,
                variant_id=row.variant_id,
                event_count=int(row.event_count),
                unique_sessions=int(row.unique_sessions),
            )
            for row in result.all()
        ]

    async def event_counts(self, experiment_id: Optional[str] = None) -> List[EventCount]:
        """Raw event volume per (event, variant)."""
        stmt = (
            select(
                TrackingEvent.event_name,
                TrackingEvent.variant_id,
                func.count(TrackingEvent.id).label("count"),
            )
            .group_by(TrackingEvent.event_name, TrackingEvent.variant_id)
            .order_by(TrackingEvent.event_name, TrackingEvent.variant_id)
        )
        if experiment_id:
            stmt = stmt.where(TrackingEvent.experiment_id == experiment_id)

        result = await self._execute(stmt, "event_counts")
        return [
            EventCount(event_name=row.event_name, variant_id=row.variant_id, count=int(row.count))
            for row in result.all()
        ]

    async def kpi_metrics(
        self,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> List[KPIValue]:
        events = set()
        for kpi in KPI_DEFINITIONS.values():
            events.update((kpi.numerator_event, kpi.denominator_event))

        counts = await self.distinct_sessions_by_event(events, experiment_id, variant_id)

        values = []
        for key, kpi in KPI_DEFINITIONS.items():
            numerator = counts.get(kpi.numerator_event, 0)
            denominator = counts.get(kpi.denominator_event, 0)
            values.append(
                KPIValue(
                    key=key,
                    name=kpi.name,
                    kpi_type=kpi.kpi_type,
                    numerator_event=kpi.numerator_event,
                    denominator_event=kpi.denominator_event,
                    numerator=numerator,
                    denominator=denominator,
                    value=ratio(numerator, denominator),
                )
            )
        return values
