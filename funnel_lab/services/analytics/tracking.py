from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.config import get_settings
from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS
from funnel_lab.core.errors import PersistenceUnavailableError
from funnel_lab.models.schemas import TrackingEventCreate
from funnel_lab.models.tracking_event import TrackingEvent
from funnel_lab.services.analytics.confidence import bucket_from_properties

logger = structlog.get_logger()


class EventLedger:
    """Append-only store of funnel and interaction events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(self, event: TrackingEventCreate) -> TrackingEvent:
        # A numeric confidence wins over any label the client sent
        confidence_bucket = bucket_from_properties(event.properties) or event.confidence_bucket

        row = TrackingEvent(
            event_name=event.event_name,
            session_id=event.session_id,
            user_id=event.user_id,
            timestamp=event.timestamp or datetime.now(timezone.utc),
            hotel_id=event.hotel_id,
            room_id=event.room_id,
            order_id=event.order_id,
            experiment_id=event.experiment_id,
            variant_id=event.variant_id,
            confidence_bucket=confidence_bucket,
            properties=event.properties or {},
            page_url=event.page_url,
            referrer=event.referrer,
            user_agent=event.user_agent,
            device_type=event.device_type,
            country=event.country,
            language=event.language,
        )

        try:
            self.db.add(row)
            await self.db.commit()
            await self.db.refresh(row)
        except STORE_UNAVAILABLE_ERRORS as e:
            await self.db.rollback()
            raise PersistenceUnavailableError("record_event", e) from e

        logger.debug(
            "event_recorded",
            event_name=row.event_name,
            session_id=row.session_id,
            experiment_id=row.experiment_id,
            variant_id=row.variant_id,
        )
        return row

    async def get_events(
        self,
        event_name: Optional[str] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        experiment_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TrackingEvent]:
        stmt = select(TrackingEvent)

        if event_name:
            stmt = stmt.where(TrackingEvent.event_name == event_name)
        if session_id:
            stmt = stmt.where(TrackingEvent.session_id == session_id)
        if user_id:
            stmt = stmt.where(TrackingEvent.user_id == user_id)
        if experiment_id:
            stmt = stmt.where(TrackingEvent.experiment_id == experiment_id)
        if start_date:
            stmt = stmt.where(TrackingEvent.timestamp >= start_date)
        if end_date:
            stmt = stmt.where(TrackingEvent.timestamp <= end_date)

        stmt = stmt.order_by(TrackingEvent.timestamp.desc(), TrackingEvent.id.desc()).limit(
            limit or get_settings().EVENT_QUERY_LIMIT
        )

        try:
            result = await self.db.execute(stmt)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("get_events", e) from e
        return list(result.scalars().all())

    async def get_session_timeline(self, session_id: str) -> List[TrackingEvent]:
        """All events of one session, oldest first."""
        stmt = (
            select(TrackingEvent)
            .where(TrackingEvent.session_id == session_id)
            .order_by(TrackingEvent.timestamp.asc(), TrackingEvent.id.asc())
        )

        try:
            result = await self.db.execute(stmt)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PersistenceUnavailableError("get_session_timeline", e) from e
        return list(result.scalars().all())
