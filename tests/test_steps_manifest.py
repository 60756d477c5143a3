"""Tests for step/flavor registries, flavor validation and manifest building."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from kata_engine.errors import FlavorNotFoundError, StepNotFoundError
from kata_engine.gates import Gate, GateCondition
from kata_engine.knowledge import Learning, LearningEvidence
from kata_engine.manifest import ExecutionContext, ManifestBuilder, merge_resources
from kata_engine.steps import (
    AgentResource,
    Artifact,
    Flavor,
    FlavorRegistry,
    FlavorStepRef,
    SkillResource,
    Step,
    StepRegistry,
    StepResources,
    ToolResource,
)

pytestmark = pytest.mark.unit


def _needs(name: str) -> Gate:
    return Gate(type="entry", conditions=[GateCondition(type="artifact-exists", artifact_name=name)])


def _flavor(*refs: tuple[str, str], synthesis: str = "summary", **extra) -> Flavor:
    return Flavor(
        name="standard",
        stage_category="research",
        steps=[FlavorStepRef(step_name=name, step_type=step_type) for name, step_type in refs],
        synthesis_artifact=synthesis,
        **extra,
    )


class TestStepRegistry:
    def test_register_get_list_delete(self, tmp_path: Path) -> None:
        registry = StepRegistry(tmp_path / "steps")
        registry.register(Step(type="research"))
        registry.register(Step(type="research", flavor="deep"))

        assert registry.get("research", "deep").flavor == "deep"
        assert (tmp_path / "steps" / "research.deep.json").is_file()
        assert registry.list_flavors("research") == ["deep"]

        fresh = StepRegistry(tmp_path / "steps")
        assert {(s.type, s.flavor) for s in fresh.list()} == {("research", None), ("research", "deep")}

        registry.delete("research", "deep")
        with pytest.raises(StepNotFoundError):
            StepRegistry(tmp_path / "steps").get("research", "deep")

    def test_list_merges_disk_after_cache_is_filled(self, tmp_path: Path) -> None:
        registry = StepRegistry(tmp_path / "steps")
        registry.register(Step(type="research"))
        StepRegistry(tmp_path / "steps").register(Step(type="build"))

        assert {s.type for s in registry.list()} == {"research", "build"}

    def test_load_builtins_accepts_yaml_and_skips_invalid(
        self, caplog: pytest.LogCaptureFixture, tmp_path: Path
    ) -> None:
        builtin = tmp_path / "builtin"
        builtin.mkdir()
        (builtin / "plan.yaml").write_text(yaml.safe_dump({"type": "plan", "description": "Shape"}), encoding="utf-8")
        (builtin / "broken.json").write_text('{"type": ""}', encoding="utf-8")

        registry = StepRegistry(tmp_path / "steps")
        with caplog.at_level(logging.WARNING, logger="kata_engine.steps"):
            loaded = registry.load_builtins(builtin)

        assert loaded == 1
        assert registry.get("plan").description == "Shape"
        assert "Skip invalid definition broken.json" in caplog.text


class TestFlavorRegistry:
    def test_register_get_list_by_category(self, tmp_path: Path) -> None:
        registry = FlavorRegistry(tmp_path / "flavors")
        registry.register(_flavor(("gather", "research")))
        registry.register(
            Flavor(
                name="tdd",
                stage_category="build",
                steps=[FlavorStepRef(step_name="impl", step_type="build")],
                synthesis_artifact="code",
            )
        )

        assert [f.name for f in registry.list("research")] == ["standard"]
        assert FlavorRegistry(tmp_path / "flavors").get("build", "tdd").synthesis_artifact == "code"
        with pytest.raises(FlavorNotFoundError):
            registry.get("review", "missing")

    def test_list_sees_flavors_saved_by_another_registry(self, tmp_path: Path) -> None:
        writer = FlavorRegistry(tmp_path / "flavors")
        reader = FlavorRegistry(tmp_path / "flavors")
        reader.register(_flavor(("gather", "research")))
        writer.register(
            Flavor(
                name="outline",
                stage_category="plan",
                steps=[FlavorStepRef(step_name="draft", step_type="plan")],
                synthesis_artifact="outline",
            )
        )

        assert [f.name for f in reader.list("plan")] == ["outline"]
        assert {f.name for f in reader.list()} == {"standard", "outline"}

    def test_list_keeps_cached_entry_over_disk_copy(self, tmp_path: Path) -> None:
        registry = FlavorRegistry(tmp_path / "flavors")
        cached = registry.register(_flavor(("gather", "research")))
        FlavorRegistry(tmp_path / "flavors").register(_flavor(("gather", "research"), description="edited"))

        assert registry.list("research") == [cached]

    def test_duplicate_step_names_are_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            _flavor(("a", "research"), ("a", "plan"))

    def test_flavor_needs_at_least_one_step(self) -> None:
        with pytest.raises(PydanticValidationError):
            _flavor()


class TestFlavorValidation:
    @staticmethod
    def _resolver(steps: dict[str, Step]):
        return lambda _name, step_type: steps.get(step_type)

    def test_valid_dependency_chain(self, tmp_path: Path) -> None:
        steps = {
            "gather": Step(type="gather", artifacts=[Artifact(name="notes")]),
            "summarize": Step(type="summarize", entry_gate=_needs("notes"), artifacts=[Artifact(name="summary")]),
        }
        result = FlavorRegistry(tmp_path).validate(
            _flavor(("g", "gather"), ("s", "summarize")), self._resolver(steps)
        )

        assert result.valid is True
        assert result.errors == []

    def test_artifact_produced_only_by_later_step(self, tmp_path: Path) -> None:
        steps = {
            "summarize": Step(type="summarize", entry_gate=_needs("notes"), artifacts=[Artifact(name="summary")]),
            "gather": Step(type="gather", artifacts=[Artifact(name="notes")]),
        }
        result = FlavorRegistry(tmp_path).validate(
            _flavor(("s", "summarize"), ("g", "gather")), self._resolver(steps)
        )

        assert result.valid is False
        assert result.errors == ['Step "s" requires artifact "notes" which is only produced by later step "g".']

    def test_stage_input_artifacts_satisfy_entry_gates(self, tmp_path: Path) -> None:
        steps = {"summarize": Step(type="summarize", entry_gate=_needs("brief"), artifacts=[Artifact(name="summary")])}
        registry = FlavorRegistry(tmp_path)

        assert registry.validate(_flavor(("s", "summarize")), self._resolver(steps), ["brief"]).valid is True
        missing = registry.validate(_flavor(("s", "summarize")), self._resolver(steps))
        assert "no preceding step or stage input provides" in missing.errors[0]

    def test_unresolved_step_and_unknown_override(self, tmp_path: Path) -> None:
        result = FlavorRegistry(tmp_path).validate(
            _flavor(("g", "gather"), overrides={"nope": {"prompt_template": "x"}}),
            self._resolver({}),
        )

        assert result.valid is False
        assert result.errors[0].startswith('Override key "nope" does not match any step name')
        assert result.errors[1] == 'Step "g" (type: "gather") could not be resolved.'
        assert len(result.errors) == 2

    def test_missing_synthesis_artifact(self, tmp_path: Path) -> None:
        steps = {"gather": Step(type="gather", artifacts=[Artifact(name="notes")])}
        result = FlavorRegistry(tmp_path).validate(_flavor(("g", "gather")), self._resolver(steps))

        assert result.errors == ['Synthesis artifact "summary" is not produced by any step.']


class TestManifestBuilder:
    def test_default_prompt_without_extras(self) -> None:
        manifest = ManifestBuilder.build(Step(type="research"), ExecutionContext(pipeline_id="p1"))

        assert manifest.prompt == 'Execute the "research" stage.'
        assert manifest.resources is None
        assert manifest.learnings == []

    def test_template_interpolation_keeps_unknown_placeholders(self) -> None:
        step = Step(type="build", prompt_template="Pipeline {{pipelineId}} stage {{ stageIndex }} for {{bet}} {{unknown}}")
        context = ExecutionContext(pipeline_id="p9", stage_index=2, metadata={"bet": "export"})

        manifest = ManifestBuilder.build(step, context)

        assert manifest.prompt == "Pipeline p9 stage 2 for export {{unknown}}"

    def test_learnings_and_resources_are_appended(self) -> None:
        learning = Learning(
            tier="stage",
            category="testing",
            content="Write the failing test first.",
            confidence=0.85,
            evidence=[LearningEvidence(pipeline_id="p0", stage_type="build", observation="fewer bugs", recorded_at="t0")],
        )
        step = Step(
            type="build",
            resources=StepResources(tools=[ToolResource(name="pytest", purpose="run tests", command="pytest -q")]),
        )
        flavor_resources = StepResources(
            tools=[ToolResource(name="pytest", purpose="ignored duplicate")],
            agents=[AgentResource(name="reviewer", when="after implementation")],
            skills=[SkillResource(name="refactor")],
        )

        manifest = ManifestBuilder.build(step, ExecutionContext(pipeline_id="p1"), [learning], flavor_resources)

        assert "## Learnings from Previous Executions" in manifest.prompt
        assert "### [STAGE] testing" in manifest.prompt
        assert "**Confidence**: 85%" in manifest.prompt
        assert "- fewer bugs (build, t0)" in manifest.prompt
        assert manifest.prompt.index("## Learnings") < manifest.prompt.index("## Suggested Resources")
        assert "- pytest: run tests" in manifest.prompt
        assert "ignored duplicate" not in manifest.prompt
        assert "- reviewer: after implementation" in manifest.prompt
        assert "- refactor" in manifest.prompt
        assert [t.purpose for t in manifest.resources.tools] == ["run tests"]

    def test_aggregate_flavor_resources_skips_unresolved_steps(self) -> None:
        flavor = _flavor(
            ("a", "gather"),
            ("b", "missing"),
            resources=StepResources(skills=[SkillResource(name="notes")]),
        )
        steps = {"gather": Step(type="gather", resources=StepResources(agents=[AgentResource(name="scout")]))}

        merged = ManifestBuilder.aggregate_flavor_resources(flavor, steps)

        assert [a.name for a in merged.agents] == ["scout"]
        assert [s.name for s in merged.skills] == ["notes"]

    def test_merge_resources_keeps_first_occurrence(self) -> None:
        merged = merge_resources(
            StepResources(tools=[ToolResource(name="x", purpose="first")]),
            None,
            StepResources(tools=[ToolResource(name="x", purpose="second"), ToolResource(name="y", purpose="y")]),
        )

        assert [(t.name, t.purpose) for t in merged.tools] == [("x", "first"), ("y", "y")]
