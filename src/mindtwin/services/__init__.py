"""Stateful per-subject services over the pure engines."""

from .twin_state_service import TwinStateService
from .belief_service import BeliefService
from .personalization import learn_personalization

__all__ = [
    "TwinStateService",
    "BeliefService",
    "learn_personalization",
]
