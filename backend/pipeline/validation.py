"""
Step Graph Validation.

Checks a pipeline's step list against the initially available variables
and produces an execution plan. Pure: no I/O, no provider lookups. A
pipeline that fails here never reaches a provider.

Rules:
  - every input names an initial variable or an earlier step's output
  - a fan-out has at least one branch and one output name per branch
  - no variable name is declared twice (initial variables included)
  - step ids used in events are unique
"""

from dataclasses import dataclass
from typing import Iterable

from .errors import ValidationError
from .spec_parser import FanOutBranch, FanOutStep, PipelineDefinition, SaveStep, Step


@dataclass(frozen=True)
class PlannedUnit:
    """
    The smallest schedulable piece of work.

    Every step is one unit, except a fan-out, which is one unit per branch.
    """
    unit_id: str  # id used in step events
    step_index: int
    step: Step
    inputs: tuple[str, ...]
    output: str | None  # None for save steps
    branch_index: int | None = None
    branch: FanOutBranch | None = None


@dataclass(frozen=True)
class PlannedStep:
    index: int
    step: Step
    units: tuple[PlannedUnit, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    """A validated pipeline, annotated for scheduling."""
    name: str
    steps: tuple[PlannedStep, ...]
    initial_names: frozenset[str]
    concurrency: int | None = None

    @property
    def units(self) -> tuple[PlannedUnit, ...]:
        return tuple(unit for planned in self.steps for unit in planned.units)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def produced_ids(self) -> list[str]:
        """Ids of every unit that binds a variable, in declaration order."""
        return [unit.unit_id for unit in self.units if unit.output is not None]

    @property
    def produced_names(self) -> list[str]:
        return [unit.output for unit in self.units if unit.output is not None]


def _check_name(name: str, where: str) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"{where} declares an empty variable name")


def _plan_units(index: int, step: Step) -> tuple[PlannedUnit, ...]:
    if isinstance(step, FanOutStep):
        return tuple(
            PlannedUnit(
                unit_id=out,
                step_index=index,
                step=step,
                inputs=step.inputs,
                output=out,
                branch_index=i,
                branch=branch,
            )
            for i, (branch, out) in enumerate(zip(step.branches, step.out))
        )
    if isinstance(step, SaveStep):
        return (PlannedUnit(
            unit_id=step.id or f"save-{index}",
            step_index=index,
            step=step,
            inputs=step.inputs,
            output=None,
        ),)
    out = step.outputs[0]
    return (PlannedUnit(
        unit_id=step.id or out,
        step_index=index,
        step=step,
        inputs=step.inputs,
        output=out,
    ),)


def validate_pipeline(
    definition: PipelineDefinition,
    initial_names: Iterable[str] = (),
) -> ExecutionPlan:
    """
    Validate a pipeline and build its execution plan.

    Args:
        definition: Parsed pipeline
        initial_names: Variables supplied by the caller before execution

    Returns:
        ExecutionPlan with one PlannedStep per step, in order

    Raises:
        ValidationError: naming the first offending reference
    """
    if not definition.steps:
        raise ValidationError(f"Pipeline '{definition.name}' has no steps")

    available: set[str] = set()
    for name in initial_names:
        _check_name(name, "Initial variables")
        available.add(name)
    initial = frozenset(available)

    unit_ids: set[str] = set()
    planned: list[PlannedStep] = []

    for index, step in enumerate(definition.steps):
        where = f"Step {index} ({step.kind.value})"

        for name in step.inputs:
            if name not in available:
                raise ValidationError(
                    f"{where} references undeclared variable '{name}'",
                    step_id=step.id,
                    kind=step.kind.value,
                )

        if isinstance(step, FanOutStep):
            if not step.branches:
                raise ValidationError(f"{where} has no branches", kind=step.kind.value)
            if len(step.branches) != len(step.out):
                raise ValidationError(
                    f"{where} has {len(step.branches)} branches but "
                    f"{len(step.out)} output names",
                    kind=step.kind.value,
                )

        if isinstance(step, SaveStep) and not step.destination.strip():
            raise ValidationError(f"{where} has an empty destination", kind=step.kind.value)

        for name in step.outputs:
            _check_name(name, where)
            if name in available:
                raise ValidationError(
                    f"{where} redeclares variable '{name}'",
                    step_id=step.id,
                    kind=step.kind.value,
                )
            available.add(name)

        units = _plan_units(index, step)
        for unit in units:
            if unit.unit_id in unit_ids:
                raise ValidationError(f"{where} reuses step id '{unit.unit_id}'", kind=step.kind.value)
            unit_ids.add(unit.unit_id)

        planned.append(PlannedStep(index=index, step=step, units=units))

    return ExecutionPlan(
        name=definition.name,
        steps=tuple(planned),
        initial_names=initial,
        concurrency=definition.concurrency,
    )
