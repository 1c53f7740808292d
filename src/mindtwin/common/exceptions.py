"""
Structured Exception Hierarchy

Every error raised by mindtwin carries an error code, a context dictionary
and a correlation id so that failures can be logged and traced uniformly.

Numerical degeneracy (singular covariance), insufficient history and unknown
observation sources are deliberately NOT errors; see the engines for the
fallbacks they return instead.
"""

from typing import Dict, List, Any, Optional
import uuid
from datetime import datetime, timezone


class MindTwinException(Exception):
    """
    Base exception class for all mindtwin exceptions.

    Provides structured error information including error codes,
    context data, and correlation IDs for tracing.
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.cause = cause
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None
        }


class ConfigurationError(MindTwinException):
    """Raised when configuration cannot be loaded or validated."""

    def __init__(
        self,
        message: str,
        config_path: Optional[str] = None,
        validation_errors: Optional[List[str]] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if config_path:
            context['config_path'] = config_path
        if validation_errors:
            context['validation_errors'] = validation_errors

        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            context=context,
            **kwargs
        )


class EstimationError(MindTwinException):
    """Raised when a state estimation cycle cannot be completed."""

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        method: Optional[str] = None,
        variable_id: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if subject_id:
            context['subject_id'] = subject_id
        if method:
            context['method'] = method
        if variable_id:
            context['variable_id'] = variable_id

        super().__init__(
            message=message,
            error_code=kwargs.pop('error_code', "ESTIMATION_ERROR"),
            context=context,
            **kwargs
        )


class EmptyBatchError(EstimationError):
    """Raised when a batch update is requested with no observations."""

    def __init__(self, message: str = "Batch update requires at least one observation", **kwargs):
        super().__init__(message, error_code="EMPTY_BATCH", **kwargs)


class TwinNotFoundError(MindTwinException):
    """Raised when an operation requires an existing twin for a subject."""

    def __init__(self, subject_id: str, **kwargs):
        context = kwargs.pop('context', {})
        context['subject_id'] = subject_id
        super().__init__(
            message=f"No twin exists for subject {subject_id}",
            error_code="TWIN_NOT_FOUND",
            context=context,
            **kwargs
        )


class BeliefUpdateError(MindTwinException):
    """Raised when a belief update cannot be applied."""

    def __init__(
        self,
        message: str,
        subject_id: Optional[str] = None,
        observation_type: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if subject_id:
            context['subject_id'] = subject_id
        if observation_type:
            context['observation_type'] = observation_type

        super().__init__(
            message=message,
            error_code="BELIEF_UPDATE_ERROR",
            context=context,
            **kwargs
        )


class DataStoreError(MindTwinException):
    """Raised when the persistence collaborator fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        entity_type: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if operation:
            context['operation'] = operation
        if entity_type:
            context['entity_type'] = entity_type

        super().__init__(
            message=message,
            error_code="DATA_STORE_ERROR",
            context=context,
            **kwargs
        )
