"""
Experimentation engine.

This module provides:
- Deterministic hash bucketing of sessions
- Experiment configuration and lifecycle (draft, running, paused, completed)
- Idempotent variant assignment and exposure tracking
- Sample size, lift significance and sample ratio mismatch statistics
"""

from funnel_lab.services.experiments.analysis import ExperimentAnalysisService, ExperimentResult
from funnel_lab.services.experiments.assignment import AssignmentResult, AssignmentService
from funnel_lab.services.experiments.service import ExperimentService
from funnel_lab.services.experiments.stats import (
    analyze_lift,
    calculate_confidence_interval,
    calculate_sample_size,
    run_proportion_z_test,
    srm_check,
)

__all__ = [
    "AssignmentResult",
    "AssignmentService",
    "ExperimentAnalysisService",
    "ExperimentResult",
    "ExperimentService",
    "analyze_lift",
    "calculate_confidence_interval",
    "calculate_sample_size",
    "run_proportion_z_test",
    "srm_check",
]
