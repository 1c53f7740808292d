"""
Configuration management for mindtwin.

Configuration is described by pydantic models with range validation. A YAML
file provides the base values, an optional ``.env`` file and the process
environment provide overrides using ``MINDTWIN_<SECTION>__<FIELD>`` keys,
e.g. ``MINDTWIN_TWIN__HISTORY_CAP=500`` or ``MINDTWIN_LOGGING__LEVEL=DEBUG``.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "MINDTWIN_"
ENV_NESTING = "__"

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[3] / "config" / "mindtwin.yaml"


class LoggingConfiguration(BaseModel):
    """Logging output configuration."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="pretty", pattern="^(pretty|json)$")
    logger_name: str = Field(default="mindtwin", min_length=1)

    @field_validator('level', mode='before')
    @classmethod
    def normalize_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('format', mode='before')
    @classmethod
    def normalize_format(cls, v):
        return v.lower() if isinstance(v, str) else v


class KalmanDefaults(BaseModel):
    """Per-variable Kalman settings shared by every twin variable."""
    adaptive_q: bool = True
    adaptive_r: bool = True
    adaptation_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    forgetting_factor: float = Field(default=0.95, ge=0.0, le=1.0)
    outlier_threshold: float = Field(default=3.0, gt=0.0)
    max_gain: Optional[float] = Field(default=0.9, gt=0.0)
    innovation_window: int = Field(default=50, ge=10, le=10000)
    variance_floor: float = Field(default=1e-4, gt=0.0, le=1.0)


class TwinServiceConfiguration(BaseModel):
    """Twin State Service behaviour."""
    history_cap: int = Field(default=1000, ge=1)
    smoothing_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    ensemble_runs: int = Field(default=10, ge=2, le=1000)
    ensemble_spread: float = Field(default=0.1, ge=0.0, le=1.0)
    personalization_window_days: int = Field(default=30, ge=1, le=3650)
    min_personalization_points: int = Field(default=7, ge=3)
    initial_variance: float = Field(default=0.1, gt=0.0, le=1.0)
    summary_window: int = Field(default=30, ge=3)
    kalman: KalmanDefaults = Field(default_factory=KalmanDefaults)


class EarlyWarningConfiguration(BaseModel):
    """Bifurcation / early-warning detection settings."""
    min_history: int = Field(default=7, ge=3)
    history_window_days: int = Field(default=30, ge=1, le=3650)
    approach_distance: float = Field(default=0.3, gt=0.0, le=1.0)
    min_days: float = Field(default=1.0, gt=0.0)
    max_days: float = Field(default=365.0, gt=0.0)

    @field_validator('max_days')
    @classmethod
    def validate_day_range(cls, v, info):
        min_days = info.data.get('min_days')
        if min_days is not None and v < min_days:
            raise ValueError("max_days must not be smaller than min_days")
        return v


class BeliefEngineConfiguration(BaseModel):
    """Belief Update Engine settings."""
    default_prior_variance: float = Field(default=0.25, gt=0.0)
    min_variance: float = Field(default=0.01, gt=0.0)
    decay_rate: float = Field(default=0.01, ge=0.0, le=1.0)
    significance_threshold: float = Field(default=0.2, ge=0.0)
    clinical_significance_threshold: float = Field(default=0.3, ge=0.0)
    history_cap: int = Field(default=1000, ge=1)
    likelihood_noise: float = Field(default=0.2, ge=0.0, le=1.0)

    @field_validator('min_variance')
    @classmethod
    def validate_min_variance(cls, v, info):
        prior = info.data.get('default_prior_variance')
        if prior is not None and v > prior:
            raise ValueError("min_variance must not exceed default_prior_variance")
        return v


class MindTwinConfiguration(BaseModel):
    """Root configuration."""
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)
    twin: TwinServiceConfiguration = Field(default_factory=TwinServiceConfiguration)
    early_warning: EarlyWarningConfiguration = Field(default_factory=EarlyWarningConfiguration)
    belief: BeliefEngineConfiguration = Field(default_factory=BeliefEngineConfiguration)
    random_seed: Optional[int] = None


def _set_nested(target: Dict[str, Any], path: list, value: str) -> None:
    node = target
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[path[-1]] = value


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    """
    Collect ``MINDTWIN_`` prefixed variables into a nested dictionary.
    Example:
        MINDTWIN_TWIN__KALMAN__MAX_GAIN=0.8
        -> {"twin": {"kalman": {"max_gain": "0.8"}}}
    """
    overrides: Dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX):].split(ENV_NESTING) if part]
        if not path:
            continue
        _set_nested(overrides, path, value)
        logger.debug(f"Configuration override from environment: {key}")
    return overrides


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML config {path}: {e}",
            config_path=str(path),
            cause=e
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"YAML file {path} is not a mapping at root level",
            config_path=str(path)
        )
    return data


def load_configuration(
    path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> MindTwinConfiguration:
    """Load and validate configuration.

    Args:
        path: YAML file to load. Falls back to the bundled default when it
            exists, otherwise to model defaults.
        env_file: Optional ``.env`` file loaded into the process environment
            before overrides are collected.
        environ: Environment mapping to read overrides from (defaults to
            ``os.environ``).

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file is missing, malformed, or invalid
    """
    data: Dict[str, Any] = {}
    config_path: Optional[Path] = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_path}",
                config_path=str(config_path)
            )
    elif DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    if config_path is not None:
        data = _load_yaml(config_path)
        logger.info(f"Loaded configuration from {config_path}")

    if env_file is not None:
        if load_dotenv(dotenv_path=env_file, override=True):
            logger.info(f"Loaded environment variables from {env_file}")

    overrides = _env_overrides(dict(os.environ) if environ is None else environ)
    if overrides:
        data = _deep_merge(data, overrides)

    try:
        return MindTwinConfiguration(**data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError(
            "Configuration validation failed",
            config_path=str(config_path) if config_path else None,
            validation_errors=errors,
            cause=e
        ) from e
