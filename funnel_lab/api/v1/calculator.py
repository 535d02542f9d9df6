from dataclasses import asdict

from fastapi import APIRouter

from funnel_lab.api.v1.errors import http_error
from funnel_lab.config import get_settings
from funnel_lab.models.schemas import (
    LiftRequest,
    LiftResponse,
    SampleSizeRequest,
    SampleSizeResponse,
    SRMRequest,
    SRMResponse,
)
from funnel_lab.services.experiments.stats import (
    VariantData,
    analyze_lift,
    calculate_sample_size,
    srm_check,
)

router = APIRouter()


@router.post("/sample-size", response_model=SampleSizeResponse)
async def sample_size(request: SampleSizeRequest):
    """Required sessions per arm to detect the given MDE."""
    try:
        per_arm = calculate_sample_size(
            mde_percent=request.mde_percent,
            confidence_level=request.confidence_level,
            power=request.power,
            baseline_rate=request.baseline_rate,
        )
    except ValueError as e:
        raise http_error(e)

    return SampleSizeResponse(sample_size_per_arm=per_arm, total_sample_size=per_arm * 2)


@router.post("/lift", response_model=LiftResponse)
async def lift(request: LiftRequest):
    control = VariantData(
        name="control",
        users=request.control.users,
        conversions=request.control.conversions,
        is_control=True,
    )
    treatment = VariantData(
        name="treatment",
        users=request.treatment.users,
        conversions=request.treatment.conversions,
    )

    try:
        analysis = analyze_lift(control, treatment, request.confidence_level)
    except ValueError as e:
        raise http_error(e)

    return LiftResponse(**asdict(analysis))


@router.post("/srm", response_model=SRMResponse)
async def srm(request: SRMRequest):
    """Chi-square sample ratio check. An infinite statistic is returned as null."""
    try:
        result = srm_check(
            request.observed_counts, request.allocation_ratio, alpha=get_settings().SRM_ALPHA
        )
    except ValueError as e:
        raise http_error(e)

    return SRMResponse(**asdict(result))
