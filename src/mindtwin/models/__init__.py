"""Immutable domain models for twins and tipping points."""

from .twin import (
    AttractorType,
    DerivedMetrics,
    EstimationMethod,
    Observation,
    Personalization,
    StabilityClass,
    StateVariable,
    TwinState,
)
from .tipping_point import (
    BifurcationType,
    CriticalityLevel,
    EarlyWarningSignals,
    StabilityLandscape,
    TippingPoint,
    TippingPointDistance,
    Urgency,
)

__all__ = [
    "AttractorType",
    "DerivedMetrics",
    "EstimationMethod",
    "Observation",
    "Personalization",
    "StabilityClass",
    "StateVariable",
    "TwinState",
    "BifurcationType",
    "CriticalityLevel",
    "EarlyWarningSignals",
    "StabilityLandscape",
    "TippingPoint",
    "TippingPointDistance",
    "Urgency",
]
