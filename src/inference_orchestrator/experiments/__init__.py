"""Experimentation and feature flags"""
from .engine import ASSIGNMENT_EVENT, CONVERSION_EVENT, EXPOSURE_EVENT, ExperimentEngine
from .hashing import bucket, stable_hash
from .models import (
    Assignment,
    AudienceRule,
    Experiment,
    ExperimentStatus,
    FeatureFlag,
    Variant,
    load_definitions,
    validate_experiment,
    validate_flag,
)
from .statistics import SignificanceResult, required_sample_size, two_proportion_z_test

__all__ = [
    "ASSIGNMENT_EVENT",
    "CONVERSION_EVENT",
    "EXPOSURE_EVENT",
    "Assignment",
    "AudienceRule",
    "Experiment",
    "ExperimentEngine",
    "ExperimentStatus",
    "FeatureFlag",
    "SignificanceResult",
    "Variant",
    "bucket",
    "load_definitions",
    "required_sample_size",
    "stable_hash",
    "two_proportion_z_test",
    "validate_experiment",
    "validate_flag",
]
