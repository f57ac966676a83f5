"""
Pipeline Document Parser

Parses YAML/JSON pipeline documents into a tagged union of frozen step
dataclasses, and exports them back.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Mapping, Union

import yaml

from .errors import ParseError
from .payloads import _freeze, thaw


# =============================================================================
# Step Types
# =============================================================================

class StepKind(str, Enum):
    """Valid step kinds in a pipeline."""
    GENERATE = "generate"
    TRANSFORM = "transform"
    SAVE = "save"
    FAN_OUT = "fan-out"
    VISION = "vision"
    TEXT = "text"


@dataclass(frozen=True)
class GenerateStep:
    """Invoke a generator and bind its image to `out`."""
    generator: str
    out: str
    params: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.GENERATE

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def inputs(self) -> tuple[str, ...]:
        return ()

    @property
    def outputs(self) -> tuple[str, ...]:
        return (self.out,)


@dataclass(frozen=True)
class TransformStep:
    """Apply one transform operation to `input`, binding the result to `out`."""
    op: str
    input: str
    out: str
    provider: str | None = None  # None -> registry default
    params: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.TRANSFORM

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def inputs(self) -> tuple[str, ...]:
        return (self.input,)

    @property
    def outputs(self) -> tuple[str, ...]:
        return (self.out,)


@dataclass(frozen=True)
class SaveStep:
    """Persist `input` to `destination`. Binds no variable."""
    input: str
    destination: str
    provider: str | None = None  # None -> derived from the destination
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.SAVE

    @property
    def inputs(self) -> tuple[str, ...]:
        return (self.input,)

    @property
    def outputs(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class FanOutBranch:
    """
    One branch of a fan-out.

    A branch without `op` passes the input through unchanged.
    """
    op: str | None = None
    provider: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def passthrough(self) -> bool:
        return self.op is None


@dataclass(frozen=True)
class FanOutStep:
    """Apply independent branches to one shared input."""
    input: str
    branches: tuple[FanOutBranch, ...]
    out: tuple[str, ...]
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.FAN_OUT

    def __post_init__(self):
        object.__setattr__(self, "branches", tuple(self.branches))
        object.__setattr__(self, "out", tuple(self.out))

    @property
    def inputs(self) -> tuple[str, ...]:
        return (self.input,)

    @property
    def outputs(self) -> tuple[str, ...]:
        return self.out


@dataclass(frozen=True)
class VisionStep:
    """Analyze the image in `input`, binding text/JSON to `out`."""
    provider: str
    input: str
    out: str
    params: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.VISION

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def inputs(self) -> tuple[str, ...]:
        return (self.input,)

    @property
    def outputs(self) -> tuple[str, ...]:
        return (self.out,)


@dataclass(frozen=True)
class TextStep:
    """Generate text, optionally using the data in `input` as context."""
    provider: str
    out: str
    input: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None

    kind: ClassVar[StepKind] = StepKind.TEXT

    def __post_init__(self):
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def inputs(self) -> tuple[str, ...]:
        return (self.input,) if self.input else ()

    @property
    def outputs(self) -> tuple[str, ...]:
        return (self.out,)


Step = Union[GenerateStep, TransformStep, SaveStep, FanOutStep, VisionStep, TextStep]


# =============================================================================
# Pipeline
# =============================================================================

@dataclass(frozen=True)
class PipelineDefinition:
    """Complete pipeline definition."""
    name: str
    steps: tuple[Step, ...]
    concurrency: int | None = None  # overrides the engine's max in-flight

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))


# =============================================================================
# Parsing
# =============================================================================

def _require_str(data: Mapping[str, Any], key: str, where: str, *aliases: str) -> str:
    for candidate in (key, *aliases):
        value = data.get(candidate)
        if value is not None:
            break
    else:
        raise ParseError(f"{where} missing required '{key}' field")
    if not isinstance(value, str):
        raise ParseError(f"{where} field '{key}' must be a string, got {type(value).__name__}")
    return value


def _optional_str(data: Mapping[str, Any], key: str, where: str, *aliases: str) -> str | None:
    if not any(data.get(k) is not None for k in (key, *aliases)):
        return None
    return _require_str(data, key, where, *aliases)


def _params(data: Mapping[str, Any], where: str) -> dict[str, Any]:
    params = data.get("params")
    if params is None:
        return {}
    if not isinstance(params, Mapping):
        raise ParseError(f"{where} 'params' must be a mapping, got {type(params).__name__}")
    return dict(params)


def parse_branch(data: Any, where: str) -> FanOutBranch:
    """Parse a single fan-out branch."""
    if not isinstance(data, Mapping):
        raise ParseError(f"{where} must be a mapping")
    return FanOutBranch(
        op=_optional_str(data, "op", where, "operation"),
        provider=_optional_str(data, "provider", where),
        params=_params(data, where),
    )


def parse_step(data: Any, path: str = "") -> Step:
    """Parse a single step from YAML/JSON data."""
    if not isinstance(data, Mapping):
        raise ParseError(f"Step at {path} must be a mapping, got {type(data).__name__}")
    if "kind" not in data:
        raise ParseError(f"Step at {path} missing required 'kind' field")

    try:
        kind = StepKind(data["kind"])
    except ValueError:
        valid = ", ".join(k.value for k in StepKind)
        raise ParseError(f"Step at {path} has invalid kind '{data['kind']}'. Valid kinds: {valid}")

    where = f"{kind.value} step at {path}"
    step_id = _optional_str(data, "id", where)

    if kind == StepKind.GENERATE:
        return GenerateStep(
            generator=_require_str(data, "generator", where, "provider"),
            out=_require_str(data, "out", where, "output"),
            params=_params(data, where),
            id=step_id,
        )

    if kind == StepKind.TRANSFORM:
        return TransformStep(
            op=_require_str(data, "op", where, "operation"),
            input=_require_str(data, "in", where, "input"),
            out=_require_str(data, "out", where, "output"),
            provider=_optional_str(data, "provider", where),
            params=_params(data, where),
            id=step_id,
        )

    if kind == StepKind.SAVE:
        return SaveStep(
            input=_require_str(data, "in", where, "input"),
            destination=_require_str(data, "destination", where),
            provider=_optional_str(data, "provider", where),
            id=step_id,
        )

    if kind == StepKind.FAN_OUT:
        branches = data.get("branches")
        if not isinstance(branches, list):
            raise ParseError(f"{where} 'branches' must be a list")
        out = data.get("out", data.get("output"))
        if not isinstance(out, list) or not all(isinstance(name, str) for name in out):
            raise ParseError(f"{where} 'out' must be a list of variable names")
        return FanOutStep(
            input=_require_str(data, "in", where, "input"),
            branches=tuple(parse_branch(b, f"{where}.branches[{i}]") for i, b in enumerate(branches)),
            out=tuple(out),
            id=step_id,
        )

    if kind == StepKind.VISION:
        return VisionStep(
            provider=_require_str(data, "provider", where),
            input=_require_str(data, "in", where, "input"),
            out=_require_str(data, "out", where, "output"),
            params=_params(data, where),
            id=step_id,
        )

    # StepKind.TEXT
    return TextStep(
        provider=_require_str(data, "provider", where),
        out=_require_str(data, "out", where, "output"),
        input=_optional_str(data, "in", where, "input"),
        params=_params(data, where),
        id=step_id,
    )


def pipeline_from_dict(data: Any) -> PipelineDefinition:
    """Build a PipelineDefinition from already-decoded YAML/JSON data."""
    if isinstance(data, list):
        data = {"steps": data}
    if not isinstance(data, Mapping):
        raise ParseError("Pipeline must be a mapping with a 'steps' list")

    steps_data = data.get("steps")
    if not isinstance(steps_data, list):
        raise ParseError("Pipeline missing required 'steps' list")

    concurrency = data.get("concurrency")
    if concurrency is not None and (
        isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1
    ):
        raise ParseError(f"Pipeline 'concurrency' must be a positive integer, got {concurrency!r}")

    name = data.get("name", "pipeline")
    if not isinstance(name, str):
        raise ParseError("Pipeline 'name' must be a string")

    return PipelineDefinition(
        name=name,
        steps=tuple(parse_step(s, f"steps[{i}]") for i, s in enumerate(steps_data)),
        concurrency=concurrency,
    )


def parse_pipeline(content: str) -> PipelineDefinition:
    """Parse a YAML (or JSON) pipeline document."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}")
    return pipeline_from_dict(data)


def load_pipeline(path: Path | str) -> PipelineDefinition:
    """Load a pipeline from a file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {path}")
    return parse_pipeline(path.read_text())


# =============================================================================
# Export
# =============================================================================

def step_to_dict(step: Step) -> dict[str, Any]:
    """Serialize a step back to its document form."""
    data: dict[str, Any] = {"kind": step.kind.value}
    if step.id:
        data["id"] = step.id

    if isinstance(step, GenerateStep):
        data["generator"] = step.generator
    elif isinstance(step, (TransformStep, SaveStep)):
        if step.provider:
            data["provider"] = step.provider
    elif isinstance(step, (VisionStep, TextStep)):
        data["provider"] = step.provider

    if isinstance(step, TransformStep):
        data["op"] = step.op
    if isinstance(step, SaveStep):
        data["destination"] = step.destination

    if isinstance(step, FanOutStep):
        branches = []
        for branch in step.branches:
            entry: dict[str, Any] = {}
            if branch.op:
                entry["op"] = branch.op
            if branch.provider:
                entry["provider"] = branch.provider
            if branch.params:
                entry["params"] = thaw(branch.params)
            branches.append(entry)
        data["branches"] = branches

    params = getattr(step, "params", None)
    if params:
        data["params"] = thaw(params)

    if step.inputs:
        data["in"] = step.inputs[0]
    if isinstance(step, FanOutStep):
        data["out"] = list(step.out)
    elif step.outputs:
        data["out"] = step.outputs[0]

    return data


def pipeline_to_dict(definition: PipelineDefinition) -> dict[str, Any]:
    data: dict[str, Any] = {"name": definition.name}
    if definition.concurrency is not None:
        data["concurrency"] = definition.concurrency
    data["steps"] = [step_to_dict(s) for s in definition.steps]
    return data


def export_yaml(definition: PipelineDefinition) -> str:
    """Render a pipeline as a YAML document."""
    return yaml.safe_dump(pipeline_to_dict(definition), sort_keys=False, allow_unicode=True)


def describe_step(step: Step) -> str:
    """One-line summary of a step for display."""
    if isinstance(step, GenerateStep):
        return f"generate {step.generator} -> {step.out}"
    if isinstance(step, TransformStep):
        provider = f"{step.provider}." if step.provider else ""
        return f"transform {provider}{step.op}({step.input}) -> {step.out}"
    if isinstance(step, SaveStep):
        return f"save {step.input} -> {step.destination}"
    if isinstance(step, FanOutStep):
        ops = ", ".join(b.op or "passthrough" for b in step.branches)
        return f"fan-out {step.input} [{ops}] -> {', '.join(step.out)}"
    if isinstance(step, VisionStep):
        return f"vision {step.provider}({step.input}) -> {step.out}"
    source = f"({step.input})" if step.input else ""
    return f"text {step.provider}{source} -> {step.out}"
