"""
Pipeline Error Taxonomy.

Structured exceptions raised by the engine and its providers. Every error
carries enough context for a caller to decide what to do next:

  - code: machine-readable identifier (e.g. "TRANSFORM_ERROR")
  - category: classification used by callers for handling strategies
  - retryable: whether repeating the same request could succeed
  - step_id / kind / provider / operation: where the failure happened

The engine never retries. It only annotates and re-raises.
"""

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification of a failure."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PROVIDER_AUTH = "provider_auth"
    PROVIDER_QUOTA = "provider_quota"
    TRANSIENT = "transient"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


class PixelFlowError(Exception):
    """
    Base class for all pipeline errors.

    Subclasses fix `default_code`, `default_category` and
    `default_retryable`; any of them can be overridden per instance.
    """

    default_code: str = "PIXELFLOW_ERROR"
    default_category: ErrorCategory = ErrorCategory.UNKNOWN
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        step_id: str | None = None,
        kind: str | None = None,
        provider: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.step_id = step_id
        self.kind = kind
        self.provider = provider
        self.operation = operation
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(
        self,
        *,
        step_id: str | None = None,
        kind: str | None = None,
        provider: str | None = None,
        operation: str | None = None,
    ) -> "PixelFlowError":
        """Fill in any missing location fields and return self."""
        self.step_id = self.step_id or step_id
        self.kind = self.kind or kind
        self.provider = self.provider or provider
        self.operation = self.operation or operation
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "errorCode": self.code,
            "errorCategory": self.category.value,
            "retryable": self.retryable,
            "stepId": self.step_id,
            "kind": self.kind,
            "provider": self.provider,
            "operation": self.operation,
            "cause": str(self.cause) if self.cause else None,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, code={self.code!r}, "
            f"category={self.category.value!r}, retryable={self.retryable})"
        )


class ValidationError(PixelFlowError):
    """Malformed pipeline, raised before anything executes."""
    default_code = "VALIDATION_ERROR"
    default_category = ErrorCategory.VALIDATION


class ParseError(ValidationError):
    """Pipeline document could not be parsed into steps."""
    default_code = "PARSE_ERROR"


class ProviderNotFoundError(PixelFlowError):
    """
    Unknown capability kind/name pair.

    The message always lists what *is* registered so the failure explains
    itself.
    """
    default_code = "PROVIDER_NOT_FOUND"
    default_category = ErrorCategory.NOT_FOUND

    def __init__(
        self,
        kind: str,
        name: str,
        available: list[str],
        *,
        operation: str | None = None,
        **kwargs: Any,
    ):
        self.requested = name
        self.available = sorted(available)
        listing = ", ".join(self.available) if self.available else "(none)"
        if operation:
            message = (
                f"Unknown operation '{operation}' for {kind} provider '{name}'. "
                f"Available operations: {listing}"
            )
        else:
            message = f"Unknown {kind} provider '{name}'. Registered {kind} providers: {listing}"
        super().__init__(message, kind=kind, provider=name, operation=operation, **kwargs)


class ConfigurationError(PixelFlowError):
    """Missing or invalid provider configuration (e.g. absent credentials)."""
    default_code = "CONFIGURATION_ERROR"
    default_category = ErrorCategory.CONFIGURATION


class GenerationError(PixelFlowError):
    """A generator failed to produce an image."""
    default_code = "GENERATION_ERROR"


class TransformError(PixelFlowError):
    """A transform operation failed."""
    default_code = "TRANSFORM_ERROR"


class SaveError(PixelFlowError):
    """A save backend failed to persist an image."""
    default_code = "SAVE_ERROR"


class VisionError(PixelFlowError):
    """An image analysis provider failed."""
    default_code = "VISION_ERROR"


class TextGenerationError(PixelFlowError):
    """A text generation provider failed."""
    default_code = "TEXT_ERROR"


class InternalError(PixelFlowError):
    """Engine invariant violated. Indicates a bug, never user input."""
    default_code = "INTERNAL_ERROR"
    default_category = ErrorCategory.INTERNAL


class VariableAlreadyBoundError(InternalError):
    default_code = "VARIABLE_ALREADY_BOUND"


class UnboundVariableError(InternalError):
    default_code = "VARIABLE_UNBOUND"


class ExecutionAborted(PixelFlowError):
    """The caller aborted a running pipeline."""
    default_code = "EXECUTION_ABORTED"
    default_category = ErrorCategory.ABORTED


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, PixelFlowError):
        return error.retryable
    return False


def get_error_category(error: BaseException) -> ErrorCategory:
    """Get the error category, defaulting to UNKNOWN for foreign errors."""
    if isinstance(error, PixelFlowError):
        return error.category
    return ErrorCategory.UNKNOWN
