"""
mindtwin - Mental-health digital twin

Maintains a probabilistic, continuously updated model of a subject's latent
psychological state from heterogeneous observations, and detects early
warning signs of transitions toward crisis.
"""

__version__ = "0.1.0"

from .services.twin_state_service import TwinStateService
from .services.belief_service import BeliefService
from .belief.engine import BeliefUpdateEngine
from .common.config import MindTwinConfiguration, load_configuration

__all__ = [
    "TwinStateService",
    "BeliefService",
    "BeliefUpdateEngine",
    "MindTwinConfiguration",
    "load_configuration",
]
