"""
Pipeline Executor.

Runs a validated pipeline against the capability registry:
  - Readiness-driven scheduling: a step (or fan-out branch) starts as soon
    as all its inputs are bound, bounded by a max in-flight count
  - Fan-out reads its input once and hands the same payload to each branch
  - Streaming mode emits lifecycle events through a bounded channel;
    sync mode returns only the aggregated ExecutionResult
  - Provider failures are classified and recorded; results produced before
    the failure are kept

In-flight work is never cancelled. After a failure (with the default
"abort" policy) or an abort request, nothing new is scheduled and the run
ends once the steps already dispatched have finished.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from .classify import classify_error
from .errors import (
    ErrorCategory,
    ExecutionAborted,
    GenerationError,
    InternalError,
    PixelFlowError,
    SaveError,
    TextGenerationError,
    TransformError,
    VisionError,
)
from .events import (
    DEFAULT_EVENT_QUEUE_SIZE,
    EventChannel,
    ExecutionEvent,
    StepEvent,
    StepStatus,
    StepTracker,
    error_payload,
)
from .payloads import DataBlob, ImageBlob, Payload, SaveResult, UsageEvent, extract_usage, thaw
from .spec_parser import (
    FanOutStep,
    GenerateStep,
    PipelineDefinition,
    SaveStep,
    TextStep,
    TransformStep,
    VisionStep,
    pipeline_from_dict,
    parse_pipeline,
)
from .store import VariableStore
from .validation import ExecutionPlan, PlannedUnit, validate_pipeline

if TYPE_CHECKING:
    from app.config import AppConfig
    from providers.registry import CapabilityRegistry
    from providers.schema import CapabilitySchema

logger = logging.getLogger(__name__)

DEFAULT_MAX_IN_FLIGHT = 4


class FailurePolicy(str, Enum):
    """What the scheduler does after a step fails."""
    ABORT = "abort"  # schedule nothing new
    CONTINUE = "continue"  # hold back only the failed step's dependents


class PipelineStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ExecutionResult:
    """Aggregated outcome of one pipeline execution."""
    pipeline: str
    status: PipelineStatus
    image_ids: list[str] = field(default_factory=list)  # completion order
    previews: dict[str, str] = field(default_factory=dict)
    data_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    saves: dict[str, SaveResult] = field(default_factory=dict)  # step id -> result
    usage_events: list[UsageEvent] = field(default_factory=list)
    step_statuses: dict[str, StepStatus] = field(default_factory=dict)
    error: PixelFlowError | None = None
    errors: list[PixelFlowError] = field(default_factory=list)
    variables: dict[str, Payload] = field(default_factory=dict, repr=False)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == PipelineStatus.COMPLETED

    def get(self, name: str) -> Payload:
        """Payload produced under `name`."""
        try:
            return self.variables[name]
        except KeyError:
            raise KeyError(f"Pipeline '{self.pipeline}' produced no variable '{name}'") from None

    def raise_for_error(self) -> "ExecutionResult":
        """Raise the recorded error, if any."""
        if self.error is not None:
            raise self.error
        return self

    def to_response(self) -> dict[str, Any]:
        """The synchronous response payload."""
        response: dict[str, Any] = {
            "status": "completed" if self.success else "error",
            "imageIds": list(self.image_ids),
            "previews": dict(self.previews),
            "dataOutputs": dict(self.data_outputs),
            "usageEvents": [e.to_dict() for e in self.usage_events],
            "saves": [{"stepId": step_id, **r.to_dict()} for step_id, r in self.saves.items()],
            "stepStatuses": {k: v.value for k, v in self.step_statuses.items()},
        }
        if self.error is not None:
            response.update(error_payload(self.error))
        return response


def _preview(payload: ImageBlob) -> str:
    return payload.to_data_url()


class _PipelineRun:
    """State for one execution of one plan."""

    def __init__(
        self,
        executor: "PipelineExecutor",
        plan: ExecutionPlan,
        initial: Mapping[str, Payload],
        channel: EventChannel | None,
        abort_event: asyncio.Event | None,
    ):
        self.executor = executor
        self.plan = plan
        self.channel = channel
        self.store = VariableStore(initial)
        self.tracker = StepTracker([unit.unit_id for unit in plan.units])
        self.limit = plan.concurrency or executor.max_in_flight
        self.result = ExecutionResult(pipeline=plan.name, status=PipelineStatus.RUNNING)

        self._abort_requested = False
        self._abort_event = abort_event
        self._fanout_inputs: dict[int, Payload] = {}
        self._order = {unit.unit_id: i for i, unit in enumerate(plan.units)}
        self._registry: "CapabilityRegistry | None" = None

    # --- Control ---

    def abort(self) -> None:
        self._abort_requested = True

    @property
    def aborted(self) -> bool:
        return self._abort_requested or (self._abort_event is not None and self._abort_event.is_set())

    def _stopped(self) -> bool:
        if self.aborted:
            return True
        return bool(self.result.errors) and self.executor.failure_policy == FailurePolicy.ABORT

    # --- Events ---

    async def _emit(self, event: ExecutionEvent) -> None:
        if self.channel is not None:
            await self.channel.send(event)

    async def _transition(self, unit: PlannedUnit, status: StepStatus, **details: Any) -> None:
        self.tracker.transition(unit.unit_id, status)
        await self._emit(ExecutionEvent.step(StepEvent(step_id=unit.unit_id, status=status, **details)))

    # --- Main loop ---

    async def execute(self) -> ExecutionResult:
        start = time.monotonic()
        logger.info(
            f"Running pipeline '{self.plan.name}': {self.plan.total_steps} steps, "
            f"max {self.limit} in flight"
        )
        try:
            self._registry = self.executor.get_registry()
            await self._emit(ExecutionEvent.started(self.plan.total_steps, self.plan.produced_ids))
            for unit in self.plan.units:
                await self._transition(unit, StepStatus.PENDING)

            await self._schedule()

            self._finalize()
            self.result.duration_ms = int((time.monotonic() - start) * 1000)
            if self.result.error is not None:
                await self._emit(ExecutionEvent.failed(self.result.error))
            else:
                urls = [r.location for r in self.result.saves.values()]
                await self._emit(ExecutionEvent.completed(self.result.image_ids, urls))
        finally:
            if self.channel is not None:
                await self.channel.finish()

        logger.info(
            f"Pipeline '{self.plan.name}' {self.result.status.value} in {self.result.duration_ms}ms"
        )
        return self.result

    async def _schedule(self) -> None:
        waiting: list[PlannedUnit] = list(self.plan.units)
        in_flight: dict[asyncio.Task, PlannedUnit] = {}
        unreachable: set[str] = set()  # outputs that will never be bound

        while waiting or in_flight:
            if not self._stopped():
                still_waiting = []
                for unit in waiting:
                    if any(name in unreachable for name in unit.inputs):
                        # Dependent of a failed step: never scheduled
                        if unit.output:
                            unreachable.add(unit.output)
                        continue
                    if len(in_flight) < self.limit and all(name in self.store for name in unit.inputs):
                        logger.debug(f"Dispatching '{unit.unit_id}' ({unit.step.kind.value})")
                        task = asyncio.create_task(self._run_unit(unit))
                        in_flight[task] = unit
                    else:
                        still_waiting.append(unit)
                waiting = still_waiting

            if not in_flight:
                if waiting and not self._stopped():
                    names = ", ".join(unit.unit_id for unit in waiting)
                    self._record(InternalError(f"Steps can never become ready: {names}"))
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            # Handle completions in declaration order for stable results
            for task in sorted(done, key=lambda t: self._order[in_flight[t].unit_id]):
                unit = in_flight.pop(task)
                error = task.result()
                if error is not None:
                    self._record(error)
                    if unit.output:
                        unreachable.add(unit.output)

    def _record(self, error: PixelFlowError) -> None:
        if self.result.error is None:
            self.result.error = error
        self.result.errors.append(error)

    def _finalize(self) -> None:
        self.result.step_statuses = self.tracker.statuses()
        self.result.variables = {
            name: payload
            for name, payload in self.store.snapshot().items()
            if name not in self.plan.initial_names
        }
        if self.result.error is not None:
            self.result.status = PipelineStatus.FAILED
        elif self.aborted and self.tracker.count(StepStatus.PENDING):
            self.result.status = PipelineStatus.ABORTED
            self.result.error = ExecutionAborted(f"Pipeline '{self.plan.name}' was aborted")
        else:
            self.result.status = PipelineStatus.COMPLETED

    # --- Units ---

    async def _run_unit(self, unit: PlannedUnit) -> PixelFlowError | None:
        """Run one unit to a terminal state. Returns its error instead of raising."""
        await self._transition(unit, StepStatus.RUNNING)
        kind, provider, operation = self._describe(unit)
        try:
            outcome = await self._dispatch(unit)
            usage = self._bind(unit, outcome, kind, provider, operation)
        except Exception as e:
            error = classify_error(e, step_id=unit.unit_id, kind=kind, provider=provider, operation=operation)
            log = logger.error if error.category == ErrorCategory.INTERNAL else logger.warning
            log(f"Step '{unit.unit_id}' failed: {error.message}")
            await self._transition(unit, StepStatus.ERROR, error=error)
            return error

        self.result.usage_events.extend(usage)
        await self._transition(unit, StepStatus.COMPLETED, **self._completion_details(outcome))
        return None

    def _describe(self, unit: PlannedUnit) -> tuple[str, str | None, str | None]:
        """(capability kind, provider name, operation) for error context."""
        step = unit.step
        registry = self.registry
        if isinstance(step, GenerateStep):
            return "generator", step.generator, None
        if isinstance(step, TransformStep):
            return "transform", step.provider or registry.default_transform_provider, step.op
        if isinstance(step, FanOutStep):
            branch = unit.branch
            if branch.passthrough:
                return "transform", None, None
            return "transform", branch.provider or registry.default_transform_provider, branch.op
        if isinstance(step, SaveStep):
            return "save", step.provider, None
        if isinstance(step, VisionStep):
            return "vision", step.provider, None
        return "text", step.provider, None

    @property
    def registry(self) -> "CapabilityRegistry":
        if self._registry is None:
            self._registry = self.executor.get_registry()
        return self._registry

    def _params(self, schema: "CapabilitySchema | None", params: Mapping[str, Any]) -> dict[str, Any]:
        params = thaw(params)
        if self.executor.validate_params and schema is not None:
            schema.validate_params(params)
        return params

    async def _transform(
        self,
        image: Payload,
        provider_name: str | None,
        operation: str,
        params: Mapping[str, Any],
    ) -> Payload:
        entry, op_schema = self.registry.get_transform(provider_name, operation)
        if op_schema.input_type == "image" and not isinstance(image, ImageBlob):
            raise TransformError(f"Operation '{operation}' expects an image input", retryable=False)
        result = await entry.provider.transform(image, operation, self._params(op_schema, params))
        if not isinstance(result, (ImageBlob, DataBlob)):
            raise TransformError(
                f"Provider '{entry.name}' returned {type(result).__name__}, expected an image or data",
                category=ErrorCategory.INTERNAL,
            )
        return result

    async def _dispatch(self, unit: PlannedUnit) -> Payload | SaveResult:
        step = unit.step

        if isinstance(step, GenerateStep):
            entry = self.registry.get("generator", step.generator)
            image = await entry.provider.generate(self._params(entry.schema, step.params))
            if not isinstance(image, ImageBlob):
                raise GenerationError(
                    f"Generator '{entry.name}' returned {type(image).__name__}, expected an image",
                    category=ErrorCategory.INTERNAL,
                )
            return image

        if isinstance(step, TransformStep):
            return await self._transform(self.store.read(step.input), step.provider, step.op, step.params)

        if isinstance(step, FanOutStep):
            # One read per fan-out; every branch sees the same payload
            if unit.step_index not in self._fanout_inputs:
                self._fanout_inputs[unit.step_index] = self.store.read(step.input)
            source = self._fanout_inputs[unit.step_index]
            branch = unit.branch
            if branch.passthrough:
                return source
            return await self._transform(source, branch.provider, branch.op, branch.params)

        if isinstance(step, SaveStep):
            image = self.store.read(step.input)
            if not isinstance(image, ImageBlob):
                raise SaveError(f"Cannot save '{step.input}': not an image", retryable=False)
            entry, path = self.registry.resolve_save(step.destination, step.provider)
            saved = await entry.provider.save(image, path)
            if not isinstance(saved, SaveResult):
                raise SaveError(
                    f"Save provider '{entry.name}' returned {type(saved).__name__}",
                    category=ErrorCategory.INTERNAL,
                )
            return saved

        if isinstance(step, VisionStep):
            image = self.store.read(step.input)
            if not isinstance(image, ImageBlob):
                raise VisionError(f"Vision input '{step.input}' is not an image", retryable=False)
            entry = self.registry.get("vision", step.provider)
            data = await entry.provider.analyze(image, self._params(entry.schema, step.params))
            if not isinstance(data, DataBlob):
                raise VisionError(
                    f"Vision provider '{entry.name}' returned {type(data).__name__}, expected data",
                    category=ErrorCategory.INTERNAL,
                )
            return data

        if isinstance(step, TextStep):
            entry = self.registry.get("text", step.provider)
            params = self._params(entry.schema, step.params)
            if step.input:
                context = self.store.read(step.input)
                if not isinstance(context, DataBlob):
                    raise TextGenerationError(f"Text context '{step.input}' is not data", retryable=False)
                params["context"] = context.content
            data = await entry.provider.generate(params)
            if not isinstance(data, DataBlob):
                raise TextGenerationError(
                    f"Text provider '{entry.name}' returned {type(data).__name__}, expected data",
                    category=ErrorCategory.INTERNAL,
                )
            return data

        raise InternalError(f"Unhandled step kind: {type(step).__name__}")

    def _bind(
        self,
        unit: PlannedUnit,
        outcome: Payload | SaveResult,
        kind: str,
        provider: str | None,
        operation: str | None,
    ) -> list[UsageEvent]:
        """Record a successful outcome. Returns the usage it reported."""
        if isinstance(outcome, SaveResult):
            self.result.saves[unit.unit_id] = outcome
            provider = outcome.provider
        else:
            self.store.write(unit.output, outcome)
            if isinstance(outcome, ImageBlob):
                self.result.image_ids.append(unit.output)
                self.result.previews[unit.output] = _preview(outcome)
            else:
                self.result.data_outputs[unit.output] = outcome.to_output()

        if isinstance(unit.step, FanOutStep) and unit.branch.passthrough:
            return []
        return extract_usage(
            outcome.metadata,
            step_id=unit.unit_id,
            kind=kind,
            provider=provider or "",
            operation=operation,
        )

    def _completion_details(self, outcome: Payload | SaveResult) -> dict[str, Any]:
        if isinstance(outcome, SaveResult):
            return {"location": outcome.location}
        if isinstance(outcome, ImageBlob):
            if self.executor.include_previews:
                return {"preview": _preview(outcome)}
            return {}
        output = outcome.to_output()
        return {
            "data_type": output["dataType"],
            "content": output["content"],
            "parsed": output.get("parsed"),
        }


class ExecutionStream:
    """
    Async iterator over the events of one execution.

    Execution starts on first iteration. `abort()` stops new scheduling;
    `aclose()` also discards undelivered events so the run never blocks on
    a consumer that went away.

    Usage:
        stream = executor.stream(definition)
        async for event in stream:
            print(event.to_json())
        result = stream.result
    """

    def __init__(self, run: _PipelineRun):
        self._run = run
        self._channel = run.channel
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def plan(self) -> ExecutionPlan:
        return self._run.plan

    @property
    def result(self) -> ExecutionResult | None:
        if self._task is not None and self._task.done() and not self._task.cancelled():
            return self._task.result()
        return None

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run.execute())

    def abort(self) -> None:
        """Stop scheduling new steps. The terminal event reflects the abort."""
        self._run.abort()

    def __aiter__(self) -> "ExecutionStream":
        self._start()
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._channel.receive()
        if event is None:
            self._closed = True
            # Surfaces engine bugs instead of losing them
            await self._task
            raise StopAsyncIteration
        return event

    async def wait(self) -> ExecutionResult:
        """
        Wait for the run to finish and return its result.

        Events not read by then are dropped and later ones are not queued,
        so the run cannot stall on a full channel.
        """
        self._start()
        self._channel.discard()
        return await self._task

    async def aclose(self) -> None:
        """Abort, drop pending events and wait for in-flight steps."""
        if self._closed:
            return
        self._closed = True
        self._run.abort()
        self._channel.discard()
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> "ExecutionStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class PipelineExecutor:
    """
    Executes pipelines against a capability registry.

    Usage:
        executor = PipelineExecutor(registry)
        result = await executor.run(definition, {"photo": image})
    """

    def __init__(
        self,
        registry: "CapabilityRegistry | None" = None,
        *,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
        failure_policy: FailurePolicy | str = FailurePolicy.ABORT,
        validate_params: bool = False,
        include_previews: bool = True,
    ):
        """
        Initialize the executor.

        Args:
            registry: Frozen CapabilityRegistry (default: the global registry)
            max_in_flight: Max concurrently running steps (default 4)
            event_queue_size: Bound of the streaming event queue
            failure_policy: "abort" or "continue"
            validate_params: Check params against provider schemas before dispatch
            include_previews: Attach inline previews to completed step events
        """
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._registry = registry
        self.max_in_flight = max_in_flight
        self.event_queue_size = event_queue_size
        self.failure_policy = FailurePolicy(failure_policy)
        self.validate_params = validate_params
        self.include_previews = include_previews

    @classmethod
    def from_config(
        cls,
        config: "AppConfig | None" = None,
        registry: "CapabilityRegistry | None" = None,
    ) -> "PipelineExecutor":
        """Build an executor from the engine settings in the app config."""
        from app.config import get_config

        settings = (config or get_config()).engine
        return cls(
            registry,
            max_in_flight=settings.max_in_flight,
            event_queue_size=settings.event_queue_size,
            failure_policy=settings.failure_policy,
            validate_params=settings.validate_params,
        )

    def get_registry(self) -> "CapabilityRegistry":
        if self._registry is None:
            from providers.registry import get_capability_registry
            self._registry = get_capability_registry()
        return self._registry

    def plan(
        self,
        definition: PipelineDefinition,
        initial_variables: Mapping[str, Payload] | None = None,
    ) -> ExecutionPlan:
        """Validate without executing."""
        return validate_pipeline(definition, (initial_variables or {}).keys())

    def _prepare(
        self,
        definition: PipelineDefinition,
        initial_variables: Mapping[str, Payload] | None,
        channel: EventChannel | None,
        abort_event: asyncio.Event | None,
    ) -> _PipelineRun:
        initial = dict(initial_variables or {})
        for name, payload in initial.items():
            if not isinstance(payload, (ImageBlob, DataBlob)):
                raise TypeError(f"Initial variable '{name}' must be an ImageBlob or DataBlob")
        plan = self.plan(definition, initial)
        return _PipelineRun(self, plan, initial, channel, abort_event)

    def stream(
        self,
        definition: PipelineDefinition,
        initial_variables: Mapping[str, Payload] | None = None,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionStream:
        """
        Start a streaming execution.

        Validation happens here, before any event exists: a malformed
        pipeline raises ValidationError and emits nothing.
        """
        channel = EventChannel(self.event_queue_size)
        return ExecutionStream(self._prepare(definition, initial_variables, channel, abort_event))

    async def run(
        self,
        definition: PipelineDefinition,
        initial_variables: Mapping[str, Payload] | None = None,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """
        Run to completion and return the aggregated result.

        Raises ValidationError for malformed pipelines. Step failures don't
        raise: they are recorded on the result alongside whatever completed.
        """
        run = self._prepare(definition, initial_variables, None, abort_event)
        return await run.execute()


async def run_pipeline(
    pipeline: PipelineDefinition | Mapping[str, Any] | str,
    initial_variables: Mapping[str, Payload] | None = None,
    **executor_options: Any,
) -> ExecutionResult:
    """
    Run a pipeline given as a definition, a decoded document or YAML text.
    """
    if isinstance(pipeline, str):
        definition = parse_pipeline(pipeline)
    elif isinstance(pipeline, PipelineDefinition):
        definition = pipeline
    else:
        definition = pipeline_from_dict(pipeline)
    executor = PipelineExecutor(**executor_options)
    return await executor.run(definition, initial_variables)
