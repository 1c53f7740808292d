"""
Static tables describing the twin's latent variables and which observation
sources inform them.

Unknown sources are simply absent from ``SOURCE_VARIABLE_MAP``; extend the
table to support a new source.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Tuple


@dataclass(frozen=True)
class VariableDefinition:
    variable_id: str
    category: str
    default_value: float
    process_noise: float
    measurement_noise: float


DEFAULT_STATE_VARIABLES: Tuple[VariableDefinition, ...] = (
    VariableDefinition("emotion_anxiety", "emotion", 0.3, 0.05, 0.1),
    VariableDefinition("emotion_sadness", "emotion", 0.3, 0.05, 0.1),
    VariableDefinition("emotion_stress", "emotion", 0.3, 0.05, 0.1),
    VariableDefinition("emotion_joy", "emotion", 0.5, 0.05, 0.1),
    VariableDefinition("emotion_hopelessness", "emotion", 0.2, 0.03, 0.1),
    VariableDefinition("cognition_rumination", "cognition", 0.3, 0.04, 0.1),
    VariableDefinition("cognition_focus", "cognition", 0.6, 0.04, 0.1),
    VariableDefinition("cognition_suicidal_ideation", "cognition", 0.0, 0.02, 0.05),
    VariableDefinition("physio_sleep_quality", "physiology", 0.6, 0.05, 0.1),
    VariableDefinition("physio_energy", "physiology", 0.5, 0.05, 0.1),
    VariableDefinition("physio_appetite", "physiology", 0.5, 0.03, 0.1),
    VariableDefinition("social_engagement", "social", 0.5, 0.04, 0.1),
    VariableDefinition("social_support", "social", 0.5, 0.03, 0.1),
    VariableDefinition("behavior_withdrawal", "behavior", 0.3, 0.04, 0.1),
    VariableDefinition("behavior_substance_use", "behavior", 0.2, 0.03, 0.1),
    VariableDefinition("protective_coping", "protective", 0.5, 0.03, 0.1),
    VariableDefinition("protective_resilience", "protective", 0.5, 0.02, 0.1),
)

VARIABLE_DEFINITIONS: Mapping[str, VariableDefinition] = MappingProxyType(
    {definition.variable_id: definition for definition in DEFAULT_STATE_VARIABLES}
)

SOURCE_VARIABLE_MAP: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "gps_location": ("social_engagement", "behavior_withdrawal"),
    "accelerometer": ("physio_energy", "physio_sleep_quality"),
    "screen_time": ("cognition_focus", "behavior_withdrawal", "emotion_anxiety"),
    "call_logs": ("social_engagement", "social_support"),
    "message_logs": ("social_engagement", "emotion_sadness"),
    "social_media": ("social_engagement", "emotion_anxiety", "cognition_rumination"),
    "sleep_tracking": ("physio_sleep_quality", "physio_energy"),
    "heart_rate": ("emotion_anxiety", "emotion_stress"),
    "ema_survey": ("emotion_anxiety", "emotion_sadness", "emotion_joy", "emotion_stress"),
    "keyboard_dynamics": ("cognition_focus", "emotion_stress"),
    "voice_analysis": ("emotion_sadness", "emotion_anxiety"),
    "facial_expression": ("emotion_joy", "emotion_sadness", "emotion_anxiety"),
})

# Wellbeing aggregates
POSITIVE_VARIABLES: Tuple[str, ...] = (
    "emotion_joy", "physio_sleep_quality", "physio_energy", "social_engagement", "protective_coping",
)
NEGATIVE_VARIABLES: Tuple[str, ...] = (
    "emotion_anxiety", "emotion_sadness", "emotion_stress", "cognition_rumination", "behavior_withdrawal",
)
PROTECTIVE_VARIABLES: Tuple[str, ...] = ("protective_coping", "protective_resilience")


def variables_for_source(source: str) -> Tuple[str, ...]:
    """Variable ids informed by ``source``; empty for unknown sources."""
    return SOURCE_VARIABLE_MAP.get(source, ())
