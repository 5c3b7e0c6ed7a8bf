from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .gears import GearLadder
from .utils import (
    gb_to_kb,
    getenv_argv,
    getenv_bool,
    getenv_csv,
    getenv_float,
    getenv_int,
    getenv_int_list,
    getenv_str,
)

# ---------- Defaults (tuned for a 64 GB / 32-thread build host) ----------
DEFAULT_JOBS_LEVELS = "32,16,8,4,2"
DEFAULT_PHASE1_JOBS_LEVELS = "8,4,2"
DEFAULT_PHASE1_TARGET = "flash_attention"
DEFAULT_CLEANUP_PATTERNS = "*.o,*.os,*.d"
# ninja status line: "[123/4567] Building CXX object ..."
DEFAULT_PROGRESS_PATTERN = r"\[(\d+)/(\d+)\]"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class GovernorConfig:
    # Paths
    project_root: Path
    build_dir: Path

    # Executor / external commands
    executor_command: Tuple[str, ...]           # e.g. ("ninja",); "-j N [target]" appended per attempt
    executor_build_file: str                    # pre-flight marker inside build_dir
    executor_line_buffer: bool                  # prefix "stdbuf -oL" when available
    configure_command: Tuple[str, ...]          # run once when the build file is missing; empty disables
    package_command: Tuple[str, ...]            # run from project_root after the last phase

    # Phases
    phase1_target: str                          # empty string skips phase 1
    phase1_jobs_levels: Tuple[int, ...]
    jobs_levels: Tuple[int, ...]

    # Governor
    memory_threshold_gb: float
    check_interval_fast_sec: float              # poll timeout at gear 0
    check_interval_throttle_sec: float          # poll timeout at any lower gear
    cpu_stall_threshold_percent: float
    cpu_stall_duration_sec: float
    throttle_task_count: int                    # upshift batch size
    progress_pattern: str

    # Recovery
    cleanup_window_sec: float
    cleanup_patterns: Tuple[str, ...]
    termination_wait_sec: float
    cooldown_sec: float

    # Observability
    decision_log_path: Optional[Path]

    @property
    def memory_threshold_kb(self) -> int:
        return gb_to_kb(self.memory_threshold_gb)

    @property
    def phase1_ladder(self) -> GearLadder:
        return GearLadder(self.phase1_jobs_levels)

    @property
    def main_ladder(self) -> GearLadder:
        return GearLadder(self.jobs_levels)

    @property
    def build_file_path(self) -> Path:
        return self.build_dir / self.executor_build_file


# ---------- Loader ----------
def load_config() -> GovernorConfig:
    project_root = Path(getenv_str("PROJECT_ROOT", ".")).expanduser().resolve()
    build_dir = Path(getenv_str("BUILD_DIR", "build")).expanduser()
    if not build_dir.is_absolute():
        build_dir = project_root / build_dir

    decision_log = getenv_str("DECISION_LOG_PATH", "")
    # Set-but-empty PHASE1_TARGET disables phase 1, so no blank fallback here.
    phase1_target = os.getenv("PHASE1_TARGET", DEFAULT_PHASE1_TARGET)

    cfg = GovernorConfig(
        project_root=project_root,
        build_dir=build_dir,

        executor_command=getenv_argv("EXECUTOR_COMMAND", "ninja"),
        executor_build_file=getenv_str("EXECUTOR_BUILD_FILE", "build.ninja"),
        executor_line_buffer=getenv_bool("EXECUTOR_LINE_BUFFER", True),
        configure_command=getenv_argv(
            "CONFIGURE_COMMAND", "python setup.py bdist_wheel --cmake-only"
        ),
        package_command=getenv_argv("PACKAGE_COMMAND", "python setup.py bdist_wheel"),

        phase1_target=phase1_target.strip(),
        phase1_jobs_levels=getenv_int_list("PHASE1_JOBS_LEVELS", DEFAULT_PHASE1_JOBS_LEVELS),
        jobs_levels=getenv_int_list("JOBS_LEVELS", DEFAULT_JOBS_LEVELS),

        memory_threshold_gb=getenv_float("MEMORY_DOWNSHIFT_THRESHOLD_GB", 50.0, 1.0, 4096.0),
        check_interval_fast_sec=getenv_float("CHECK_INTERVAL_FAST_SEC", 15.0, 0.1, 600.0),
        check_interval_throttle_sec=getenv_float("CHECK_INTERVAL_THROTTLE_SEC", 30.0, 0.1, 600.0),
        cpu_stall_threshold_percent=getenv_float("CPU_STALL_THRESHOLD_PERCENT", 2.5, 0.0, 100.0),
        cpu_stall_duration_sec=getenv_float("CPU_STALL_DURATION_SEC", 10.0, 0.0, 86400.0),
        throttle_task_count=getenv_int("THROTTLE_TASK_COUNT", 5, 1, 100000),
        progress_pattern=getenv_str("PROGRESS_PATTERN", DEFAULT_PROGRESS_PATTERN),

        cleanup_window_sec=getenv_float("CLEANUP_WINDOW_SEC", 15.0, 0.0, 3600.0),
        cleanup_patterns=getenv_csv("CLEANUP_PATTERNS", DEFAULT_CLEANUP_PATTERNS),
        termination_wait_sec=getenv_float("TERMINATION_WAIT_TIMEOUT_SEC", 10.0, 0.5, 600.0),
        cooldown_sec=getenv_float("FORCED_COOLDOWN_DURATION_SEC", 30.0, 0.0, 3600.0),

        decision_log_path=Path(decision_log).expanduser() if decision_log.strip() else None,
    )

    # Fail early on malformed ladders; GearLadder raises ValueError.
    if cfg.phase1_target:
        GearLadder(cfg.phase1_jobs_levels)
    GearLadder(cfg.jobs_levels)

    return cfg


__all__ = ["GovernorConfig", "load_config"]
