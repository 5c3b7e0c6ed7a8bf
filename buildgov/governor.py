from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Pattern, Sequence

from .config import DEFAULT_PROGRESS_PATTERN, GovernorConfig
from .errors import BuildCancelled, BuildFailedError
from .extensions.decision_log import DecisionLog
from .extensions.logging import get_executor_logger
from .extensions.recovery import RecoveryActions
from .extensions.resource_monitor import ResourceMonitor, ResourceSample
from .state import GovernorState, KillReason, PhaseResult, PhaseSpec
from .supervisor import BuildAttempt, ProcessSupervisor
from .utils import kb_to_gb

logger = logging.getLogger("governor")


@dataclass(frozen=True, slots=True)
class GovernorSettings:
    """
    Control-loop knobs.

    memory_threshold_kb:
        Host used memory above which the governor downshifts; also the
        ceiling the predictive upshift must stay under.

    fast_interval_sec / throttle_interval_sec:
        Output poll timeout at gear 0 and at every lower gear. The poll is the
        loop's clock, so this is also the sampling cadence while the executor
        is quiet.

    stall_threshold_percent / stall_duration_sec:
        Host CPU utilization below the threshold for at least the duration
        counts as a stalled executor and triggers a restart at the same gear.

    batch_size:
        Completed tasks required at a throttled gear before an upshift is
        evaluated.
    """

    memory_threshold_kb: int
    fast_interval_sec: float = 15.0
    throttle_interval_sec: float = 30.0
    stall_threshold_percent: float = 2.5
    stall_duration_sec: float = 10.0
    batch_size: int = 5
    progress_pattern: str = DEFAULT_PROGRESS_PATTERN

    @classmethod
    def from_config(cls, cfg: GovernorConfig) -> "GovernorSettings":
        return cls(
            memory_threshold_kb=cfg.memory_threshold_kb,
            fast_interval_sec=cfg.check_interval_fast_sec,
            throttle_interval_sec=cfg.check_interval_throttle_sec,
            stall_threshold_percent=cfg.cpu_stall_threshold_percent,
            stall_duration_sec=cfg.cpu_stall_duration_sec,
            batch_size=cfg.throttle_task_count,
            progress_pattern=cfg.progress_pattern,
        )


@dataclass(frozen=True, slots=True)
class Decision:
    """A forced termination the governor wants to perform this tick."""

    reason: KillReason
    next_gear_index: int
    used_memory_kb: int
    predicted_memory_kb: Optional[int] = None


class AdaptiveGovernor:
    """
    Runs one phase of the build under adaptive concurrency control.

    Each attempt runs the executor at one gear until it exits or the governor
    kills it. Per tick, in this order:

      - downshift when used memory exceeds the threshold and a lower gear exists;
      - otherwise, at a throttled gear with a full batch of completed tasks,
        upshift when the linearly extrapolated memory at the next gear stays
        under the threshold (else the batch counter restarts);
      - restart at the same gear once host CPU has been below the stall
        threshold for the stall duration.

    Governor-forced terminations are followed by recovery and a new attempt.
    A self-ended attempt finishes the phase: exit 0 returns a PhaseResult,
    anything else raises BuildFailedError without retry.
    """

    def __init__(
        self,
        phase: PhaseSpec,
        *,
        settings: GovernorSettings,
        supervisor: ProcessSupervisor,
        monitor: ResourceMonitor,
        recovery: RecoveryActions,
        executor_command: Sequence[str],
        build_dir: Optional[Path] = None,
        decision_log: Optional[DecisionLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.phase = phase
        self.settings = settings
        self.supervisor = supervisor
        self.monitor = monitor
        self.recovery = recovery
        self.executor_command = tuple(executor_command)
        self.build_dir = build_dir
        self.decisions = decision_log or DecisionLog()
        self.state = GovernorState()
        self._clock = clock
        self._progress_re: Pattern[str] = re.compile(settings.progress_pattern)
        self._echo = get_executor_logger()
        self._attempts = 0
        self._forced: List[KillReason] = []

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def ladder(self):
        return self.phase.ladder

    @property
    def current_concurrency(self) -> int:
        return self.ladder.level(self.state.gear_index)

    @property
    def forced_terminations(self) -> List[KillReason]:
        return list(self._forced)

    def poll_interval(self) -> float:
        if self.state.gear_index == 0:
            return self.settings.fast_interval_sec
        return self.settings.throttle_interval_sec

    def run(self) -> PhaseResult:
        started = self._clock()
        logger.info(
            "[Governor] phase '%s' starting: jobs levels %s | target=%s | memory threshold %dGB",
            self.phase.name,
            ", ".join(str(j) for j in self.ladder),
            self.phase.target or "<all>",
            kb_to_gb(self.settings.memory_threshold_kb),
        )

        while True:
            exit_code, decision = self._run_attempt()
            if decision is not None:
                logger.info("[Governor] intervention complete; resuming build")
                continue

            if exit_code == 0:
                result = PhaseResult(
                    phase=self.phase.name,
                    exit_code=0,
                    attempts=self._attempts,
                    forced_terminations=tuple(self._forced),
                    final_gear_index=self.state.gear_index,
                    final_concurrency=self.current_concurrency,
                    elapsed_sec=max(0.0, self._clock() - started),
                )
                logger.info(
                    "[Governor] phase '%s' succeeded (attempts=%d, forced terminations=%d, final -j%d)",
                    self.phase.name,
                    result.attempts,
                    len(result.forced_terminations),
                    result.final_concurrency,
                )
                self.decisions.record(
                    "phase_succeeded",
                    phase=self.phase.name,
                    attempts=result.attempts,
                    forced_terminations=[r.value for r in result.forced_terminations],
                    final_concurrency=result.final_concurrency,
                )
                return result

            logger.error(
                "[Governor] phase '%s' failed with a critical error (exit code %s)",
                self.phase.name,
                exit_code,
            )
            self.decisions.record(
                "phase_failed", phase=self.phase.name, exit_code=exit_code
            )
            raise BuildFailedError(
                f"phase '{self.phase.name}' failed with exit code {exit_code}",
                phase=self.phase.name,
                executor_exit_code=int(exit_code if exit_code is not None else -1),
            )

    # ------------------------------------------------------------------ #
    # Decision policy
    # ------------------------------------------------------------------ #

    def record_line(self, line: str) -> bool:
        """Echo an executor line; True if it reports a completed task."""
        self._echo.info(line)
        if self._progress_re.search(line):
            self.state.tasks_completed_at_gear += 1
            return True
        return False

    def evaluate(self, sample: ResourceSample, now: float) -> Optional[Decision]:
        st = self.state
        cfg = self.settings
        ladder = self.ladder
        used = sample.used_memory_kb

        # Reactive downshift is always checked first.
        if used > cfg.memory_threshold_kb:
            lower = ladder.downshift(st.gear_index)
            if lower is not None:
                return Decision(KillReason.MEMORY_DOWNSHIFT, lower, used)
            logger.debug(
                "[Governor] memory %dGB over threshold but already in lowest gear; monitoring",
                kb_to_gb(used),
            )

        # Incremental predictive upshift.
        if st.gear_index > 0 and st.tasks_completed_at_gear >= cfg.batch_size:
            higher = ladder.upshift(st.gear_index)
            assert higher is not None
            cur_jobs = ladder.level(st.gear_index)
            next_jobs = ladder.level(higher)
            # Linear memory-per-job extrapolation; a rough, uncalibrated model.
            predicted = used * next_jobs // cur_jobs
            if predicted < cfg.memory_threshold_kb:
                return Decision(KillReason.PREDICTIVE_UPSHIFT, higher, used, predicted)
            logger.warning(
                "[Governor] upshift to -j%d aborted: predicted memory %dGB would exceed "
                "threshold %dGB; staying at -j%d for another %d tasks",
                next_jobs,
                kb_to_gb(predicted),
                kb_to_gb(cfg.memory_threshold_kb),
                cur_jobs,
                cfg.batch_size,
            )
            self.decisions.record(
                "upshift_aborted",
                phase=self.phase.name,
                concurrency=cur_jobs,
                next_concurrency=next_jobs,
                used_memory_kb=used,
                predicted_memory_kb=predicted,
            )
            st.tasks_completed_at_gear = 0

        # CPU stall detection.
        cpu = sample.cpu_percent
        if cpu is not None and cpu < cfg.stall_threshold_percent:
            if st.stall_started_at is None:
                st.stall_started_at = now
            elif now - st.stall_started_at >= cfg.stall_duration_sec:
                st.stall_started_at = None
                return Decision(KillReason.CPU_STALL, st.gear_index, used)
        else:
            st.stall_started_at = None

        return None

    # ------------------------------------------------------------------ #
    # Attempt lifecycle
    # ------------------------------------------------------------------ #

    def _announce_attempt(self) -> None:
        idx = self.state.gear_index
        jobs = self.current_concurrency
        if idx == 0:
            logger.info("[Governor] %s: full speed with -j%d", self.phase.name, jobs)
        else:
            logger.info(
                "[Governor] %s (throttled): resuming in %s",
                self.phase.name,
                self.ladder.describe(idx),
            )

    def _run_attempt(self):
        st = self.state
        st.begin_attempt()
        self._announce_attempt()

        attempt = self.supervisor.start(
            self.executor_command,
            self.current_concurrency,
            target=self.phase.target,
            cwd=self.build_dir,
        )
        self._attempts += 1
        self.decisions.record(
            "attempt_started",
            phase=self.phase.name,
            attempt=self._attempts,
            gear_index=st.gear_index,
            concurrency=self.current_concurrency,
            pid=attempt.pid,
        )

        decision: Optional[Decision] = None
        try:
            while self.supervisor.is_alive(attempt):
                line = self.supervisor.poll_line(attempt, self.poll_interval())
                if line is not None:
                    self.record_line(line)

                sample = self.monitor.sample()
                decision = self.evaluate(sample, self._clock())
                if decision is not None:
                    self._force_terminate(attempt, decision)
                    break
        except BaseException as e:
            self._abort_attempt(attempt, e)
            raise

        for line in self.supervisor.drain(attempt):
            if decision is None:
                self.record_line(line)
            else:
                self._echo.info(line)

        exit_code = self.supervisor.wait(attempt, timeout=self.supervisor.termination_wait_sec)
        self.supervisor.close(attempt)

        if decision is not None:
            self._forced.append(decision.reason)
            st.gear_index = decision.next_gear_index
            self.recovery.after_forced_termination(st.consume_kill_reason(), attempt.pgid)
        return exit_code, decision

    def _force_terminate(self, attempt: BuildAttempt, decision: Decision) -> None:
        st = self.state
        cur_jobs = self.current_concurrency
        next_jobs = self.ladder.level(decision.next_gear_index)

        if decision.reason is KillReason.MEMORY_DOWNSHIFT:
            logger.warning(
                "[Governor] memory threshold crossed (%dGB > %dGB); downshifting -j%d -> -j%d",
                kb_to_gb(decision.used_memory_kb),
                kb_to_gb(self.settings.memory_threshold_kb),
                cur_jobs,
                next_jobs,
            )
        elif decision.reason is KillReason.PREDICTIVE_UPSHIFT:
            logger.info(
                "[Governor] throttle batch complete (predicted %dGB OK); upshifting -j%d -> -j%d",
                kb_to_gb(decision.predicted_memory_kb or 0),
                cur_jobs,
                next_jobs,
            )
        else:
            logger.warning(
                "[Governor] CPU stalled below %.1f%% for %.0fs; restarting at -j%d",
                self.settings.stall_threshold_percent,
                self.settings.stall_duration_sec,
                cur_jobs,
            )

        st.last_kill_reason = decision.reason
        confirmed = self.supervisor.terminate(attempt)
        if not confirmed:
            logger.warning(
                "[Governor] could not confirm that the -j%d attempt (group %d) is gone; "
                "proceeding with recovery",
                cur_jobs,
                attempt.pgid,
            )
        self.decisions.record(
            "forced_termination",
            phase=self.phase.name,
            attempt=self._attempts,
            reason=decision.reason.value,
            concurrency=cur_jobs,
            next_concurrency=next_jobs,
            used_memory_kb=decision.used_memory_kb,
            predicted_memory_kb=decision.predicted_memory_kb,
            tasks_completed_at_gear=st.tasks_completed_at_gear,
            confirmed=confirmed,
        )

    def _abort_attempt(self, attempt: BuildAttempt, exc: BaseException) -> None:
        """
        Cancellation or a fatal error while an attempt is live: stop the
        process group and clean up before the exception propagates.
        """
        logger.warning(
            "[Governor] aborting attempt at -j%d (%s); stopping executor",
            self.current_concurrency,
            type(exc).__name__,
        )
        self._shielded(self.supervisor.terminate, attempt)
        self._shielded(
            self.supervisor.wait, attempt, timeout=self.supervisor.termination_wait_sec
        )
        self._shielded(self.supervisor.close, attempt)
        self.state.last_kill_reason = None
        self._shielded(
            self.recovery.after_forced_termination, None, attempt.pgid, allow_cooldown=False
        )
        self.decisions.record(
            "attempt_aborted",
            phase=self.phase.name,
            attempt=self._attempts,
            error=type(exc).__name__,
        )

    @staticmethod
    def _shielded(step, *args, **kwargs):
        """
        Run one cleanup step to completion. A repeated cancellation while the
        step runs is logged and the step is re-run; the first exception is
        the one that propagates once cleanup is done.
        """
        while True:
            try:
                return step(*args, **kwargs)
            except (BuildCancelled, KeyboardInterrupt) as e:
                logger.warning(
                    "[Governor] %s during cleanup ignored; still stopping the executor",
                    type(e).__name__,
                )


__all__ = [
    "AdaptiveGovernor",
    "Decision",
    "GovernorSettings",
]
