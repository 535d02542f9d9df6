from numbers import Real
from typing import Any, Mapping, Optional

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.5


def confidence_bucket(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def confidence_bucket_from_scores(*scores: float) -> str:
    """Bucket the mean of several per-field confidence scores."""
    if not scores:
        raise ValueError("at least one confidence score is required")
    return confidence_bucket(sum(scores) / len(scores))


def bucket_from_properties(properties: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Derive the bucket from a numeric ``confidence`` property, if the event carries one."""
    if not properties:
        return None
    value = properties.get("confidence")
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    return confidence_bucket(float(value))
