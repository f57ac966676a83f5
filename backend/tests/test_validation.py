"""Tests for step graph validation and execution planning."""

import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pipeline.errors import ValidationError
from pipeline.spec_parser import FanOutBranch, FanOutStep, PipelineDefinition, SaveStep, pipeline_from_dict
from pipeline.validation import validate_pipeline


def definition(*steps, **extra):
    return pipeline_from_dict({"name": "t", "steps": list(steps), **extra})


GEN = {"kind": "generate", "generator": "shapes", "out": "v0"}


class TestValidatePipeline:
    """Reference rules."""

    def test_valid_chain(self):
        plan = validate_pipeline(definition(
            GEN,
            {"kind": "transform", "op": "resize", "in": "v0", "out": "v1"},
            {"kind": "save", "in": "v1", "destination": "./a.png"},
        ))

        assert plan.total_steps == 3
        assert plan.produced_ids == ["v0", "v1"]
        assert [u.unit_id for u in plan.units] == ["v0", "v1", "save-2"]
        assert plan.units[2].output is None

    def test_undeclared_variable(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_pipeline(definition(
                GEN,
                {"kind": "transform", "op": "resize", "in": "vX", "out": "v1"},
            ))

        assert "vX" in exc_info.value.message
        assert exc_info.value.message.startswith("Step 1 (transform)")

    def test_forward_reference_rejected(self):
        with pytest.raises(ValidationError, match="'v0'"):
            validate_pipeline(definition(
                {"kind": "transform", "op": "resize", "in": "v0", "out": "v1"},
                GEN,
            ))

    def test_initial_variables_count_as_declared(self):
        plan = validate_pipeline(
            definition({"kind": "transform", "op": "blur", "in": "photo", "out": "soft"}),
            ["photo"],
        )

        assert plan.initial_names == frozenset({"photo"})
        assert plan.produced_names == ["soft"]

    def test_redeclared_variable(self):
        with pytest.raises(ValidationError, match="redeclares variable 'v0'"):
            validate_pipeline(definition(GEN, GEN))

    def test_output_may_not_shadow_initial_variable(self):
        with pytest.raises(ValidationError, match="redeclares"):
            validate_pipeline(definition(GEN), ["v0"])

    def test_empty_pipeline(self):
        with pytest.raises(ValidationError, match="no steps"):
            validate_pipeline(definition())

    def test_fan_out_count_mismatch(self):
        step = FanOutStep(input="v0", branches=(FanOutBranch(op="blur"),), out=("a", "b"))

        with pytest.raises(ValidationError, match="1 branches but 2 output names"):
            validate_pipeline(PipelineDefinition(name="t", steps=(step,)), ["v0"])

    def test_fan_out_without_branches(self):
        step = FanOutStep(input="v0", branches=(), out=())

        with pytest.raises(ValidationError, match="no branches"):
            validate_pipeline(PipelineDefinition(name="t", steps=(step,)), ["v0"])

    def test_empty_destination(self):
        step = SaveStep(input="v0", destination="  ")

        with pytest.raises(ValidationError, match="empty destination"):
            validate_pipeline(PipelineDefinition(name="t", steps=(step,)), ["v0"])

    def test_duplicate_step_ids(self):
        with pytest.raises(ValidationError, match="reuses step id 'same'"):
            validate_pipeline(definition(
                {**GEN, "id": "same"},
                {"kind": "generate", "generator": "shapes", "out": "v1", "id": "same"},
            ))

    def test_save_id_collision_with_variable(self):
        with pytest.raises(ValidationError, match="save-1"):
            validate_pipeline(definition(
                {"kind": "generate", "generator": "shapes", "out": "save-1"},
                {"kind": "save", "in": "save-1", "destination": "./x.svg"},
            ))

    def test_empty_variable_name(self):
        with pytest.raises(ValidationError, match="empty variable name"):
            validate_pipeline(definition({"kind": "generate", "generator": "shapes", "out": " "}))


class TestExecutionPlan:
    """Planned units."""

    def test_fan_out_expands_to_units(self):
        plan = validate_pipeline(definition(
            GEN,
            {"kind": "fan-out", "in": "v0", "branches": [{"op": "blur"}, {}], "out": ["b", "c"]},
        ))

        units = plan.steps[1].units
        assert [u.unit_id for u in units] == ["b", "c"]
        assert [u.branch_index for u in units] == [0, 1]
        assert units[1].branch.passthrough
        assert all(u.inputs == ("v0",) for u in units)
        assert plan.total_steps == 2
        assert plan.produced_ids == ["v0", "b", "c"]

    def test_explicit_ids_used_for_events(self):
        plan = validate_pipeline(definition(
            {**GEN, "id": "hero"},
            {"kind": "save", "in": "v0", "destination": "./hero.svg", "id": "store-hero"},
        ))

        assert [u.unit_id for u in plan.units] == ["hero", "store-hero"]
        assert plan.produced_ids == ["hero"]
        assert plan.produced_names == ["v0"]

    def test_concurrency_carried(self):
        plan = validate_pipeline(definition(GEN, concurrency=3))
        assert plan.concurrency == 3

    def test_validation_is_pure(self):
        pipeline = definition(GEN)

        assert validate_pipeline(pipeline) == validate_pipeline(pipeline)
