"""Kata engine - cycles, bets and staged pipelines for AI-agent delivery."""

from importlib.metadata import PackageNotFoundError, version

from kata_engine.cooldown import CooldownSession
from kata_engine.cycle_manager import CycleManager
from kata_engine.engine import KataEngine
from kata_engine.errors import KataError
from kata_engine.gates import evaluate_gate
from kata_engine.run_store import ObservationTarget, RunStore

__all__ = [
    "CooldownSession",
    "CycleManager",
    "KataEngine",
    "KataError",
    "ObservationTarget",
    "RunStore",
    "evaluate_gate",
]

try:
    __version__ = version("kata-engine")
except PackageNotFoundError:
    __version__ = "0.0.0"
