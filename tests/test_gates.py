"""Tests for gate condition evaluation."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

import kata_engine.gates as gates
from kata_engine.errors import GateEvaluationError
from kata_engine.gates import Gate, GateCondition, GateContext, evaluate_gate

pytestmark = pytest.mark.unit


def _gate(*conditions: GateCondition, required: bool = True) -> Gate:
    return Gate(type="exit", conditions=list(conditions), required=required)


def _python(code: str) -> str:
    return f'"{sys.executable}" -c "{code}"'


class TestDeclarativeConditions:
    def test_artifact_exists_passes_and_fails(self) -> None:
        gate = _gate(GateCondition(type="artifact-exists", artifact_name="doc"))

        assert evaluate_gate(gate, GateContext(available_artifacts=["doc"])).passed is True

        failed = evaluate_gate(gate, GateContext(available_artifacts=[]))
        assert failed.passed is False
        assert "not found" in failed.results[0].detail
        assert failed.results[0].detail == 'Artifact "doc" not found in available artifacts'

    def test_missing_fields_fail_with_explanatory_detail(self) -> None:
        result = evaluate_gate(
            _gate(GateCondition(type="artifact-exists"), GateCondition(type="predecessor-complete")),
            GateContext(),
        )

        assert [r.detail for r in result.results] == [
            "artifact-exists condition missing artifactName",
            "predecessor-complete condition missing predecessorType",
        ]

    def test_predecessor_and_approval(self) -> None:
        gate = _gate(
            GateCondition(type="predecessor-complete", predecessor_type="research"),
            GateCondition(type="human-approved"),
        )

        pending = evaluate_gate(gate, GateContext(completed_stages=["research"]))
        assert pending.passed is False
        assert [r.passed for r in pending.results] == [True, False]
        assert pending.results[1].detail == "Human approval not yet granted"

        approved = evaluate_gate(gate, GateContext(completed_stages=["research"], human_approved=True))
        assert approved.passed is True
        assert approved.results[0].detail == 'Predecessor "research" is complete'

    def test_schema_valid_is_deferred(self) -> None:
        result = evaluate_gate(_gate(GateCondition(type="schema-valid")), GateContext())

        assert result.passed is True
        assert result.results[0].detail == "Schema validation deferred to capture time"

    def test_optional_gate_passes_with_identical_detail(self) -> None:
        conditions = (
            GateCondition(type="artifact-exists", artifact_name="plan"),
            GateCondition(type="human-approved"),
        )
        context = GateContext()

        required = evaluate_gate(_gate(*conditions), context)
        optional = evaluate_gate(_gate(*conditions, required=False), context)

        assert required.passed is False
        assert optional.passed is True
        assert [(r.passed, r.detail) for r in optional.results] == [
            (r.passed, r.detail) for r in required.results
        ]
        assert len(optional.failed_conditions()) == 2

    def test_every_condition_is_evaluated(self) -> None:
        result = evaluate_gate(
            _gate(
                GateCondition(type="artifact-exists", artifact_name="a"),
                GateCondition(type="artifact-exists", artifact_name="b"),
                GateCondition(type="schema-valid"),
            ),
            GateContext(available_artifacts=["b"]),
        )

        assert [r.passed for r in result.results] == [False, True, True]

    def test_empty_required_gate_passes(self) -> None:
        assert evaluate_gate(_gate(), GateContext()).passed is True


class TestCommandCondition:
    def test_missing_command_fails(self) -> None:
        result = evaluate_gate(_gate(GateCondition(type="command-passes")), GateContext())

        assert result.passed is False
        assert result.results[0].detail == "command-passes condition missing command"

    def test_timeout_is_reported_as_failed_condition(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def slow(*_args, **kwargs):
            raise subprocess.TimeoutExpired(cmd="sleep 60", timeout=kwargs["timeout"])

        monkeypatch.setattr(gates.subprocess, "run", slow)

        result = evaluate_gate(_gate(GateCondition(type="command-passes", command="sleep 60")), GateContext())

        assert result.passed is False
        assert result.results[0].detail == "Command timed out after 30s: sleep 60"

    def test_spawn_failure_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def broken(*_args, **_kwargs):
            raise FileNotFoundError(2, "No such file or directory")

        monkeypatch.setattr(gates.subprocess, "run", broken)

        with pytest.raises(GateEvaluationError):
            evaluate_gate(_gate(GateCondition(type="command-passes", command="make test")), GateContext())

    def test_failure_output_is_truncated(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def noisy(*_args, **_kwargs):
            return subprocess.CompletedProcess(args="x", returncode=2, stdout="e" * 900, stderr="")

        monkeypatch.setattr(gates.subprocess, "run", noisy)

        result = evaluate_gate(
            _gate(GateCondition(type="command-passes", command="x")), GateContext(), output_limit=20
        )

        assert result.results[0].detail == "Command failed (exit 2): " + "e" * 17 + "..."

    def test_default_excerpt_stays_within_limit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def noisy(*_args, **_kwargs):
            return subprocess.CompletedProcess(args="x", returncode=1, stdout="o" * 900, stderr="")

        monkeypatch.setattr(gates.subprocess, "run", noisy)

        result = evaluate_gate(_gate(GateCondition(type="command-passes", command="x")), GateContext())

        excerpt = result.results[0].detail.removeprefix("Command failed (exit 1): ")
        assert len(excerpt) == 500
        assert excerpt.endswith("...")

    @pytest.mark.slow
    def test_real_commands_pass_and_fail(self, tmp_path: Path) -> None:
        ok = _python("print('fine')")
        bad = _python("import sys; print('boom'); sys.exit(3)")
        result = evaluate_gate(
            _gate(
                GateCondition(type="command-passes", command=ok),
                GateCondition(type="command-passes", command=bad),
            ),
            GateContext(cwd=str(tmp_path)),
        )

        assert result.passed is False
        assert result.results[0].detail == f"Command passed: {ok}"
        assert result.results[1].detail == "Command failed (exit 3): boom"
