"""Abstract base class for execution adapters.

An adapter performs the actual work of one step (prompting a coding agent,
printing manual instructions, ...). All adapters share one interface so
the flavor executor can dispatch to any of them interchangeably. Adapters
are looked up by key through the module registry; ``manual`` is built in.
"""

from __future__ import annotations

import abc
import sys
from collections.abc import Callable

from pydantic import BaseModel, Field

from kata_engine.history import TokenUsage
from kata_engine.manifest import ExecutionManifest
from kata_engine.schemas import utc_now


class ProducedArtifact(BaseModel):
    name: str
    path: str | None = None
    produced_at: str = Field(default_factory=utc_now)
    valid: bool | None = None


class ExecutionResult(BaseModel):
    success: bool
    artifacts: list[ProducedArtifact] = Field(default_factory=list)
    notes: str | None = None
    token_usage: TokenUsage | None = None
    human_approved: bool = False
    completed_at: str = Field(default_factory=utc_now)


class ExecutionAdapter(abc.ABC):
    """Common interface for step executors.

    Subclasses must implement :meth:`execute` which accepts a manifest and
    returns an :class:`ExecutionResult`.
    """

    #: Key recorded in execution history (e.g. "manual", "claude-cli").
    name: str = "base"

    @abc.abstractmethod
    def execute(self, manifest: ExecutionManifest) -> ExecutionResult:
        """Perform one step.

        Parameters
        ----------
        manifest:
            Prompt, gates, expected artifacts, learnings and resources for
            the step.
        """


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[ExecutionAdapter]] = {}
DEFAULT_ADAPTER = "manual"


def register_adapter(key: str, cls: type[ExecutionAdapter]) -> None:
    """Register an adapter class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Adapter key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, ExecutionAdapter):
        raise TypeError("Registered adapter must be an ExecutionAdapter subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Adapter '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_adapter_class(key: str) -> type[ExecutionAdapter]:
    """Look up a registered adapter class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown adapter '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_adapters() -> list[str]:
    """Return all registered adapter keys."""
    return sorted(_REGISTRY)


def resolve_adapter(key: str | None = None) -> ExecutionAdapter:
    """Instantiate the adapter registered under *key* (default ``manual``)."""
    return get_adapter_class(key or DEFAULT_ADAPTER)()


# ── Built-in adapters ─────────────────────────────────────────────

_RULE = "=" * 60


class ManualAdapter(ExecutionAdapter):
    """Print the manifest as instructions for a human and report success.

    The person at the terminal does the work; nothing is produced on their
    behalf, so ``artifacts`` is always empty.
    """

    name = "manual"

    def __init__(self, output: Callable[[str], object] | None = None) -> None:
        self.output = output or sys.stdout.write

    def execute(self, manifest: ExecutionManifest) -> ExecutionResult:
        flavor = f" ({manifest.stage_flavor})" if manifest.stage_flavor else ""
        lines = ["", _RULE, f"  Stage: {manifest.stage_type}{flavor}", _RULE, ""]
        lines += ["--- Prompt ---", "", manifest.prompt, ""]

        if manifest.artifacts:
            lines += ["--- Artifacts to Produce ---", ""]
            for artifact in manifest.artifacts:
                tag = "required" if artifact.required else "optional"
                desc = f" - {artifact.description}" if artifact.description else ""
                lines.append(f"  * {artifact.name} [{tag}]{desc}")
            lines.append("")

        gates = [
            (label, gate)
            for label, gate in (("Entry", manifest.entry_gate), ("Exit", manifest.exit_gate))
            if gate is not None
        ]
        if gates:
            lines += ["--- Gate Requirements ---", ""]
            for label, gate in gates:
                lines.append(f"  {label} gate:")
                for condition in gate.conditions:
                    desc = f" - {condition.description}" if condition.description else ""
                    lines.append(f"    * [{condition.type}]{desc}")
            lines.append("")

        if manifest.learnings:
            lines += ["--- Injected Learnings ---", ""]
            for learning in manifest.learnings:
                lines.append(f"  * [{learning.tier}/{learning.category}] {learning.content}")
                lines.append(f"    Confidence: {learning.confidence * 100:.0f}%")
            lines.append("")

        lines += [_RULE, "  Complete the above stage manually, then continue.", _RULE, ""]
        self.output("\n".join(lines))
        return ExecutionResult(success=True, notes="Manual execution: instructions displayed")


register_adapter(DEFAULT_ADAPTER, ManualAdapter)
