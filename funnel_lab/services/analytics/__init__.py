from funnel_lab.services.analytics.aggregator import FunnelAggregator, FunnelStage
from funnel_lab.services.analytics.confidence import confidence_bucket
from funnel_lab.services.analytics.tracking import EventLedger

__all__ = ["EventLedger", "FunnelAggregator", "FunnelStage", "confidence_bucket"]
