import math
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from scipy import stats as scipy_stats

from funnel_lab.core.errors import UnsupportedParameterError
from funnel_lab.models.experiment import Variant

# Two-sided critical values for the confidence levels the calculator offers
Z_ALPHA_BY_CONFIDENCE: Dict[float, float] = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}

# One-sided critical values for the supported power targets
Z_BETA_BY_POWER: Dict[float, float] = {
    0.80: 0.84,
    0.90: 1.28,
}

DEFAULT_SRM_ALPHA = 0.01


@dataclass
class VariantData:
    name: str
    users: int
    conversions: int
    is_control: bool = False

    @property
    def conversion_rate(self) -> float:
        if self.users == 0:
            return 0.0
        return self.conversions / self.users


@dataclass
class LiftAnalysis:
    control_users: int
    control_conversions: int
    treatment_users: int
    treatment_conversions: int
    control_rate: float
    treatment_rate: float
    absolute_lift: float  # treatment_rate - control_rate, as a fraction
    relative_lift: Optional[float]  # (treatment - control) / control; None when control is 0
    z_score: float
    p_value: float
    confidence_level: float
    interval_lower: Optional[float]  # bounds on relative_lift
    interval_upper: Optional[float]
    significant: bool


@dataclass
class SRMResult:
    chi2: float
    p_value: float
    passed: bool
    alpha: float
    observed: Dict[str, int] = field(default_factory=dict)
    expected: Dict[str, float] = field(default_factory=dict)


def normalize_fraction(value: float, name: str = "value") -> float:
    """Accept either a fraction (0.95) or a percentage (95) and return the fraction."""
    if value is None or math.isnan(value):
        raise ValueError(f"{name} is required")
    fraction = value / 100 if value > 1 else value
    if not 0 <= fraction <= 1:
        raise ValueError(f"{name} must be between 0 and 1 (or 0 and 100 as a percentage)")
    return fraction


def _lookup(table: Dict[float, float], value: float, parameter: str) -> float:
    fraction = normalize_fraction(value, parameter)
    for level, z in table.items():
        if math.isclose(level, fraction, abs_tol=1e-9):
            return z
    raise UnsupportedParameterError(
        parameter, value, supported=[f"{int(level * 100)}%" for level in table]
    )


def z_for_confidence(confidence_level: float) -> float:
    return _lookup(Z_ALPHA_BY_CONFIDENCE, confidence_level, "confidence_level")


def z_for_power(power: float) -> float:
    return _lookup(Z_BETA_BY_POWER, power, "power")


def calculate_sample_size(
    mde_percent: float, confidence_level: float, power: float, baseline_rate: float
) -> int:
    """
    Users needed per arm for a two-proportion test.

        n = 2 * (z_alpha/2 + z_beta)^2 * p * (1 - p) / mde^2

    ``mde_percent`` is the absolute detectable difference in percentage
    points (1.5 means 0.015). The result is always rounded up.
    """
    if mde_percent is None or mde_percent <= 0:
        raise ValueError("mde_percent must be positive")

    z_alpha = z_for_confidence(confidence_level)
    z_beta = z_for_power(power)

    p = normalize_fraction(baseline_rate, "baseline_rate")
    if p <= 0 or p >= 1:
        raise ValueError("baseline_rate must be strictly between 0 and 1")

    mde = mde_percent / 100
    n = 2 * (z_alpha + z_beta) ** 2 * p * (1 - p) / mde**2

    return math.ceil(n)


def calculate_pooled_proportion(control: VariantData, variant: VariantData) -> float:
    total_conversions = control.conversions + variant.conversions
    total_users = control.users + variant.users

    if total_users == 0:
        return 0.0

    return total_conversions / total_users


def calculate_standard_error(
    control: VariantData, variant: VariantData, pooled: bool = True
) -> float:
    if control.users == 0 or variant.users == 0:
        return 0.0

    if pooled:
        p_pooled = calculate_pooled_proportion(control, variant)
        se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / control.users + 1 / variant.users))
    else:
        # Unpooled SE for confidence intervals
        p1 = control.conversion_rate
        p2 = variant.conversion_rate
        se = math.sqrt((p1 * (1 - p1) / control.users) + (p2 * (1 - p2) / variant.users))

    return se


def run_proportion_z_test(control: VariantData, variant: VariantData) -> Tuple[float, float]:
    p1 = control.conversion_rate
    p2 = variant.conversion_rate

    se = calculate_standard_error(control, variant, pooled=True)

    if se == 0:
        return 0.0, 1.0

    z_score = float((p2 - p1) / se)

    # Two-tailed p-value
    p_value = 2 * scipy_stats.norm.sf(abs(z_score))

    return z_score, float(p_value)


def calculate_confidence_interval(
    control: VariantData, variant: VariantData, confidence_level: float = 0.95
) -> Tuple[float, float]:
    """Interval for the absolute rate difference (treatment - control), as fractions."""
    diff = variant.conversion_rate - control.conversion_rate

    se = calculate_standard_error(control, variant, pooled=False)

    z_critical = float(scipy_stats.norm.ppf(1 - (1 - confidence_level) / 2))
    margin_of_error = z_critical * se

    return diff - margin_of_error, diff + margin_of_error


def analyze_lift(
    control: VariantData, treatment: VariantData, confidence_level: float = 0.95
) -> LiftAnalysis:
    """
    Relative lift of treatment over control with a two-proportion z-test.

    The interval is the unpooled interval on the rate difference scaled by
    the control rate, so it is expressed in the same units as the lift.
    The result is significant only when the p-value clears 1 - confidence
    and the interval does not straddle zero.
    """
    confidence = normalize_fraction(confidence_level, "confidence_level")
    if not 0 < confidence < 1:
        raise ValueError("confidence_level must be strictly between 0 and 1")

    control_rate = control.conversion_rate
    treatment_rate = treatment.conversion_rate
    absolute_lift = treatment_rate - control_rate

    z_score, p_value = run_proportion_z_test(control, treatment)

    relative_lift: Optional[float] = None
    lower: Optional[float] = None
    upper: Optional[float] = None
    if control_rate > 0:
        relative_lift = absolute_lift / control_rate
        diff_lower, diff_upper = calculate_confidence_interval(control, treatment, confidence)
        lower = diff_lower / control_rate
        upper = diff_upper / control_rate

    excludes_zero = lower is not None and (lower > 0 or upper < 0)
    significant = bool(p_value < (1 - confidence) and excludes_zero)

    return LiftAnalysis(
        control_users=control.users,
        control_conversions=control.conversions,
        treatment_users=treatment.users,
        treatment_conversions=treatment.conversions,
        control_rate=control_rate,
        treatment_rate=treatment_rate,
        absolute_lift=absolute_lift,
        relative_lift=relative_lift,
        z_score=z_score,
        p_value=p_value,
        confidence_level=confidence,
        interval_lower=lower,
        interval_upper=upper,
        significant=significant,
    )


def allocation_from_control_percent(control_percent: float) -> Dict[str, float]:
    if not 0 <= control_percent <= 100:
        raise ValueError("control_percent must be between 0 and 100")
    control_share = control_percent / 100
    return {Variant.CONTROL.value: control_share, Variant.TREATMENT.value: 1 - control_share}


def srm_check(
    observed_counts: Mapping[str, int],
    allocation_ratio: Mapping[str, float],
    alpha: float = DEFAULT_SRM_ALPHA,
) -> SRMResult:
    """
    Chi-square goodness-of-fit test of the observed traffic split.

    ``allocation_ratio`` holds relative weights per variant (50/50, 0.5/0.5
    and 1/1 are equivalent). Variants missing from ``observed_counts`` count
    as zero. The check passes while the p-value stays above ``alpha``.
    """
    unknown = set(observed_counts) - set(allocation_ratio)
    if unknown:
        raise ValueError(f"Observed variants without an allocation: {sorted(unknown)}")

    total_weight = sum(allocation_ratio.values())
    if total_weight <= 0 or any(w < 0 for w in allocation_ratio.values()):
        raise ValueError("allocation_ratio weights must be non-negative and not all zero")
    if any(count < 0 for count in observed_counts.values()):
        raise ValueError("observed_counts must be non-negative")

    observed = {name: int(observed_counts.get(name, 0)) for name in allocation_ratio}
    total = sum(observed.values())
    expected = {name: total * weight / total_weight for name, weight in allocation_ratio.items()}

    if total == 0:
        return SRMResult(
            chi2=0.0, p_value=1.0, passed=True, alpha=alpha, observed=observed, expected=expected
        )

    chi2 = 0.0
    for name, expected_count in expected.items():
        if expected_count == 0:
            if observed[name] > 0:
                chi2 = math.inf
            continue
        chi2 += (observed[name] - expected_count) ** 2 / expected_count

    degrees_of_freedom = max(sum(1 for w in allocation_ratio.values() if w > 0) - 1, 1)
    p_value = 0.0 if math.isinf(chi2) else float(scipy_stats.chi2.sf(chi2, degrees_of_freedom))

    return SRMResult(
        chi2=chi2,
        p_value=p_value,
        passed=p_value > alpha,
        alpha=alpha,
        observed=observed,
        expected=expected,
    )
