"""
Cross-cutting concerns: configuration, structured exceptions, logging and
the small linear algebra toolkit used by the estimators.
"""

from .config import (
    BeliefEngineConfiguration,
    EarlyWarningConfiguration,
    KalmanDefaults,
    LoggingConfiguration,
    MindTwinConfiguration,
    TwinServiceConfiguration,
    load_configuration,
)
from .exceptions import (
    BeliefUpdateError,
    ConfigurationError,
    DataStoreError,
    EmptyBatchError,
    EstimationError,
    MindTwinException,
    TwinNotFoundError,
)
from .logging_setup import setup_logging, subject_context

__all__ = [
    # Configuration
    "BeliefEngineConfiguration",
    "EarlyWarningConfiguration",
    "KalmanDefaults",
    "LoggingConfiguration",
    "MindTwinConfiguration",
    "TwinServiceConfiguration",
    "load_configuration",

    # Exceptions
    "BeliefUpdateError",
    "ConfigurationError",
    "DataStoreError",
    "EmptyBatchError",
    "EstimationError",
    "MindTwinException",
    "TwinNotFoundError",

    # Logging
    "setup_logging",
    "subject_context",
]
