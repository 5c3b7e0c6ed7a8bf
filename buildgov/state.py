from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .gears import GearLadder


class KillReason(str, Enum):
    MEMORY_DOWNSHIFT = "memory_downshift"
    PREDICTIVE_UPSHIFT = "predictive_upshift"
    CPU_STALL = "cpu_stall"

    @property
    def memory_related(self) -> bool:
        return self is KillReason.MEMORY_DOWNSHIFT


@dataclass(slots=True)
class GovernorState:
    """
    Mutable control state, owned by one AdaptiveGovernor.

    tasks_completed_at_gear and stall_started_at are reset at the start of
    every attempt; last_kill_reason survives until recovery consumes it.
    """

    gear_index: int = 0
    tasks_completed_at_gear: int = 0
    stall_started_at: Optional[float] = None
    last_kill_reason: Optional[KillReason] = None

    def begin_attempt(self) -> None:
        self.tasks_completed_at_gear = 0
        self.stall_started_at = None

    def consume_kill_reason(self) -> Optional[KillReason]:
        reason = self.last_kill_reason
        self.last_kill_reason = None
        return reason


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    """One governed pass: a gear ladder and an optional single target."""

    name: str
    ladder: GearLadder
    target: Optional[str] = None

    @property
    def scoped(self) -> bool:
        return bool(self.target)


@dataclass(frozen=True, slots=True)
class PhaseResult:
    phase: str
    exit_code: int
    attempts: int
    forced_terminations: Tuple[KillReason, ...]
    final_gear_index: int
    final_concurrency: int
    elapsed_sec: float

    @property
    def gear_changes(self) -> int:
        return sum(1 for r in self.forced_terminations if r is not KillReason.CPU_STALL)


__all__ = ["GovernorState", "KillReason", "PhaseResult", "PhaseSpec"]
