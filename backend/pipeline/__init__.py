"""
PixelFlow Pipeline Package.

Provides:
  - Pipeline definition parsing (YAML/JSON) into typed steps
  - Step graph validation
  - Payload types and the write-once variable store
  - Concurrent, readiness-driven pipeline execution
  - Streaming lifecycle events
  - Error taxonomy and provider error classification
"""

from .errors import (
    ErrorCategory,
    PixelFlowError,
    ValidationError,
    ParseError,
    ProviderNotFoundError,
    ConfigurationError,
    GenerationError,
    TransformError,
    SaveError,
    VisionError,
    TextGenerationError,
    InternalError,
    VariableAlreadyBoundError,
    UnboundVariableError,
    ExecutionAborted,
    is_retryable,
    get_error_category,
)

from .payloads import (
    ImageBlob,
    DataBlob,
    Payload,
    SaveResult,
    UsageEvent,
)

from .spec_parser import (
    StepKind,
    GenerateStep,
    TransformStep,
    SaveStep,
    FanOutStep,
    FanOutBranch,
    VisionStep,
    TextStep,
    Step,
    PipelineDefinition,
    parse_pipeline,
    load_pipeline,
    pipeline_from_dict,
    pipeline_to_dict,
    export_yaml,
)

from .validation import (
    ExecutionPlan,
    PlannedStep,
    PlannedUnit,
    validate_pipeline,
)

from .store import VariableStore

from .events import (
    StepStatus,
    StepEvent,
    EventType,
    ExecutionEvent,
    EventChannel,
)

from .classify import classify_error

from .executor import (
    ExecutionResult,
    ExecutionStream,
    FailurePolicy,
    PipelineExecutor,
    PipelineStatus,
    run_pipeline,
)

__all__ = [
    # Errors
    "ErrorCategory",
    "PixelFlowError",
    "ValidationError",
    "ParseError",
    "ProviderNotFoundError",
    "ConfigurationError",
    "GenerationError",
    "TransformError",
    "SaveError",
    "VisionError",
    "TextGenerationError",
    "InternalError",
    "VariableAlreadyBoundError",
    "UnboundVariableError",
    "ExecutionAborted",
    "is_retryable",
    "get_error_category",
    "classify_error",
    # Payloads
    "ImageBlob",
    "DataBlob",
    "Payload",
    "SaveResult",
    "UsageEvent",
    # Definition
    "StepKind",
    "GenerateStep",
    "TransformStep",
    "SaveStep",
    "FanOutStep",
    "FanOutBranch",
    "VisionStep",
    "TextStep",
    "Step",
    "PipelineDefinition",
    "parse_pipeline",
    "load_pipeline",
    "pipeline_from_dict",
    "pipeline_to_dict",
    "export_yaml",
    # Validation
    "ExecutionPlan",
    "PlannedStep",
    "PlannedUnit",
    "validate_pipeline",
    # Execution
    "VariableStore",
    "StepStatus",
    "StepEvent",
    "EventType",
    "ExecutionEvent",
    "EventChannel",
    "ExecutionResult",
    "ExecutionStream",
    "FailurePolicy",
    "PipelineExecutor",
    "PipelineStatus",
    "run_pipeline",
]
