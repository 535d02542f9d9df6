import enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from funnel_lab.core.database import Base


class TrackingEventName(str, enum.Enum):
    """Funnel vocabulary emitted by the booking product. Free-form names are allowed too."""

    # Search
    SEARCH_INITIATED = "search_initiated"
    SEARCH_RESULT_VIEW = "search_result_view"
    SEARCH_RESULT_CLICK = "search_result_click"

    # Hotel detail
    HOTEL_DETAIL_VIEW = "hotel_detail_view"
    POLICY_DIGEST_IMPRESSION = "policy_digest_impression"
    POLICY_DIGEST_EXPAND = "policy_digest_expand"
    POLICY_EVIDENCE_CLICK = "policy_evidence_click"
    POLICY_FULLTEXT_VIEW = "policy_fulltext_view"

    # Price
    PRICE_TOGGLE_CHANGE = "price_toggle_change"
    PRICE_BREAKDOWN_VIEW = "price_breakdown_view"

    # Room
    ROOM_SELECT = "room_select"
    ROOM_COMPARE = "room_compare"

    # Booking
    BOOKING_START = "booking_start"
    BOOKING_FORM_INTERACT = "booking_form_interact"
    BOOKING_SUBMIT = "booking_submit"

    # Payment
    PAY_INITIATED = "pay_initiated"
    PAY_SUCCESS = "pay_success"
    PAY_FAILED = "pay_failed"

    # Order
    ORDER_VIEW = "order_view"
    ORDER_CANCEL = "order_cancel"

    # Support
    CONTACT_CLICK = "contact_click"
    FAQ_EXPAND = "faq_expand"

    # Map
    MAP_VIEW = "map_view"
    MAP_LANDMARK_CLICK = "map_landmark_click"


class TrackingEvent(Base):
    """Append-only behavioral event. Never updated after insert."""

    __tablename__ = "tracking_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_name = Column(String(64), nullable=False)
    session_id = Column(String(64), nullable=False)
    user_id = Column(String(64))
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Product context
    hotel_id = Column(Integer)
    room_id = Column(Integer)
    order_id = Column(Integer)

    # Experiment context
    experiment_id = Column(String(64))
    variant_id = Column(String(32))
    confidence_bucket = Column(String(32))

    # Event-specific properties
    properties = Column(JSON)

    # Client context
    page_url = Column(Text)
    referrer = Column(Text)
    user_agent = Column(Text)
    device_type = Column(String(32))
    country = Column(String(64))
    language = Column(String(16))

    __table_args__ = (
        Index("ix_tracking_events_experiment_event", "experiment_id", "event_name"),
        Index("ix_tracking_events_session", "session_id"),
        Index("ix_tracking_events_timestamp", "timestamp"),
    )
