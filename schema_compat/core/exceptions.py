"""
Custom exception classes and structured error responses.

This module provides:
- Structured error response format (CLI JSON output and HTTP handlers)
- The migration error taxonomy
- Error codes for programmatic error handling
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ErrorCode:
    """Error codes for programmatic error handling."""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Index verification errors (2xxx)
    VERIFICATION_FAILED = "ERR_2001"

    # Registry errors (3xxx)
    PHASE_TRANSITION_INVALID = "ERR_3001"
    POLICY_VIOLATION = "ERR_3002"

    # Adapter errors (4xxx)
    ENTITY_NOT_FOUND = "ERR_4001"
    IDENTITY_VIOLATION = "ERR_4002"
    CONCURRENT_WRITE_CONFLICT = "ERR_4003"
    SIDE_EFFECT_TARGET_MISSING = "ERR_4004"

    # Executor errors (5xxx)
    TRANSFORMATION_FAILED = "ERR_5001"
    CLEANUP_NOT_ALLOWED = "ERR_5002"

    # Store errors (6xxx)
    STORE_UNAVAILABLE = "ERR_6001"

    # Monitoring errors (7xxx)
    INCONSISTENCY_DETECTED = "ERR_7001"
    SNAPSHOT_RESTORE_FAILED = "ERR_7002"


class ErrorDetail(BaseModel):
    """Structured error detail."""

    code: str
    message: str
    field: str | None = None


class ErrorResponse(BaseModel):
    """Structured error response."""

    error: str  # Error class name
    code: str  # Error code for programmatic handling
    message: str  # Human-readable message
    details: list[ErrorDetail] | None = None
    context: dict[str, Any] | None = None
    timestamp: str  # ISO 8601 timestamp

    @classmethod
    def create(
        cls,
        error: str,
        code: str,
        message: str,
        details: list[ErrorDetail] | None = None,
        context: dict[str, Any] | None = None,
    ) -> "ErrorResponse":
        """Create an error response with current timestamp."""
        return cls(
            error=error,
            code=code,
            message=message,
            details=details,
            context=context,
            timestamp=datetime.utcnow().isoformat() + "Z",
        )


class MigrationLayerError(Exception):
    """Base exception for all schema compatibility layer errors."""

    error_code: str = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: list[ErrorDetail] | None = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details
        self.context = context

    def to_response(self) -> ErrorResponse:
        """Build the structured error response for this exception."""
        return ErrorResponse.create(
            error=self.__class__.__name__,
            code=self.error_code,
            message=self.message,
            details=self.details,
            context={k: str(v) for k, v in self.context.items()} or None,
        )


# =============================================================================
# Verification Errors
# =============================================================================


class VerificationFailure(MigrationLayerError):
    """Raised when required indexes are missing or too slow to start migration."""

    error_code = ErrorCode.VERIFICATION_FAILED


# =============================================================================
# Registry Errors
# =============================================================================


class PhaseTransitionError(MigrationLayerError):
    """Raised when a requested phase transition is not allowed."""

    error_code = ErrorCode.PHASE_TRANSITION_INVALID

    def __init__(self, current: str, requested: str, reason: str | None = None):
        message = f"Cannot move from phase '{current}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current, requested=requested)


class PolicyViolation(MigrationLayerError):
    """
    Raised when a write would use a schema the current policy does not allow.

    This is a programming error and should never happen while the registry
    contract is honored.
    """

    error_code = ErrorCode.POLICY_VIOLATION


# =============================================================================
# Adapter Errors
# =============================================================================


class EntityNotFound(MigrationLayerError):
    """Raised when an entity is not found."""

    error_code = ErrorCode.ENTITY_NOT_FOUND

    def __init__(self, collection: str, entity_id: Any):
        super().__init__(
            f"{collection} entity not found: {entity_id}",
            collection=collection,
            entity_id=entity_id,
        )


class InvalidFilter(MigrationLayerError):
    """Raised when a query filter names an attribute the entity cannot be filtered by."""

    error_code = ErrorCode.VALIDATION_ERROR


class InvalidChanges(MigrationLayerError):
    """Raised when an update names unknown attributes or produces an invalid entity."""

    error_code = ErrorCode.VALIDATION_ERROR


class IdentityViolation(MigrationLayerError):
    """Raised when an update or transformation would change identity fields."""

    error_code = ErrorCode.IDENTITY_VIOLATION


class ConcurrentWriteConflict(MigrationLayerError):
    """Raised when an optimistic-concurrency conditional write matched nothing."""

    error_code = ErrorCode.CONCURRENT_WRITE_CONFLICT


class EffectTargetMissing(MigrationLayerError):
    """Raised when a side effect names a document that does not exist."""

    error_code = ErrorCode.SIDE_EFFECT_TARGET_MISSING


# =============================================================================
# Executor Errors
# =============================================================================


class TransformationError(MigrationLayerError):
    """Raised when a document's data violates assumptions of a transformation."""

    error_code = ErrorCode.TRANSFORMATION_FAILED


class CleanupNotAllowed(MigrationLayerError):
    """Raised when the legacy cleanup gate is not satisfied."""

    error_code = ErrorCode.CLEANUP_NOT_ALLOWED


# =============================================================================
# Store Errors
# =============================================================================


class StoreUnavailable(MigrationLayerError):
    """Raised on transient infrastructure failures; callers retry with backoff."""

    error_code = ErrorCode.STORE_UNAVAILABLE


# =============================================================================
# Monitoring Errors
# =============================================================================


class InconsistencyDetected(MigrationLayerError):
    """Raised when legacy and new read paths disagree beyond the threshold."""

    error_code = ErrorCode.INCONSISTENCY_DETECTED


class SnapshotRestoreError(MigrationLayerError):
    """Raised when restoring a backup snapshot fails."""

    error_code = ErrorCode.SNAPSHOT_RESTORE_FAILED
