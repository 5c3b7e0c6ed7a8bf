from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import GovernorConfig
from .errors import PackagingError, PreflightError
from .extensions.decision_log import DecisionLog
from .extensions.recovery import RecoveryActions
from .extensions.resource_monitor import ResourceMonitor
from .governor import AdaptiveGovernor, GovernorSettings
from .state import PhaseResult, PhaseSpec
from .supervisor import ProcessSupervisor

logger = logging.getLogger("orchestrator")

PHASE1_NAME = "phase1"
PHASE2_NAME = "phase2"

# Packager signature: (build_dir, extra_args) -> exit code
Packager = Callable[[Path, Sequence[str]], int]
GovernorFactory = Callable[[PhaseSpec], AdaptiveGovernor]


# ----------------------------
# Pre-flight
# ----------------------------

def preflight(cfg: GovernorConfig, *, run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
    """
    Make sure the executor can run against a configured build directory.

    If the executor's build file is missing and a configure command is set,
    the configure command is run once from the project root.
    """
    logger.info("--- Build pre-flight check ---")
    if not cfg.executor_command:
        raise PreflightError("EXECUTOR_COMMAND is empty")
    exe = cfg.executor_command[0]
    if shutil.which(exe) is None:
        raise PreflightError(f"executor '{exe}' not found on PATH")

    build_file = cfg.build_file_path
    if build_file.is_file():
        logger.info("Build directory %s is already configured; skipping setup.", cfg.build_dir)
        logger.info("--- Pre-flight check complete ---")
        return

    logger.info("%s not found. Attempting to configure...", build_file)
    if not cfg.configure_command:
        raise PreflightError(f"{build_file} missing and no CONFIGURE_COMMAND set")
    if not cfg.project_root.is_dir():
        raise PreflightError(f"project root {cfg.project_root} does not exist")

    try:
        proc = run(list(cfg.configure_command), cwd=str(cfg.project_root), check=False)
    except OSError as e:
        raise PreflightError(f"configure command failed to start: {e}") from e
    if proc.returncode != 0:
        raise PreflightError(f"configure command failed (exit code {proc.returncode})")
    if not build_file.is_file():
        raise PreflightError(f"{build_file} still missing after configure")

    logger.info("Project configured successfully.")
    logger.info("--- Pre-flight check complete ---")


# ----------------------------
# Packaging
# ----------------------------

def make_command_packager(
    cfg: GovernorConfig,
    *,
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> Packager:
    """
    Packager that runs PACKAGE_COMMAND (+ pass-through args) from the project
    root, with BUILD_DIR pointing at the executor's output directory.
    """

    def _package(build_dir: Path, extra_args: Sequence[str]) -> int:
        argv = [*cfg.package_command, *extra_args]
        if not argv:
            raise PackagingError("PACKAGE_COMMAND is empty")
        env = dict(os.environ)
        env["BUILD_DIR"] = str(build_dir)
        logger.info("Running final packaging command: %s", " ".join(argv))
        try:
            proc = run(argv, cwd=str(cfg.project_root), env=env, check=False)
        except OSError as e:
            raise PackagingError(f"packaging command failed to start: {e}") from e
        return int(proc.returncode)

    return _package


# ----------------------------
# Orchestrator
# ----------------------------

class PhaseOrchestrator:
    """
    Phase 1: conservative ladder, only the named heavy target.
    Phase 2: full ladder, everything else.
    Then packaging. Any fatal failure stops the sequence.
    """

    def __init__(
        self,
        cfg: GovernorConfig,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
        monitor: Optional[ResourceMonitor] = None,
        recovery: Optional[RecoveryActions] = None,
        decision_log: Optional[DecisionLog] = None,
        packager: Optional[Packager] = None,
        governor_factory: Optional[GovernorFactory] = None,
    ) -> None:
        self.cfg = cfg
        self.supervisor = supervisor or ProcessSupervisor(
            termination_wait_sec=cfg.termination_wait_sec,
            line_buffer=cfg.executor_line_buffer,
        )
        self.monitor = monitor or ResourceMonitor()
        self.recovery = recovery or RecoveryActions(
            build_dir=cfg.build_dir,
            cleanup_window_sec=cfg.cleanup_window_sec,
            cleanup_patterns=cfg.cleanup_patterns,
            cooldown_sec=cfg.cooldown_sec,
        )
        self.decisions = decision_log or DecisionLog(cfg.decision_log_path)
        self.packager = packager or make_command_packager(cfg)
        self._governor_factory = governor_factory or self._default_governor

    def phases(self) -> List[PhaseSpec]:
        specs: List[PhaseSpec] = []
        if self.cfg.phase1_target:
            specs.append(
                PhaseSpec(
                    name=PHASE1_NAME,
                    ladder=self.cfg.phase1_ladder,
                    target=self.cfg.phase1_target,
                )
            )
        specs.append(PhaseSpec(name=PHASE2_NAME, ladder=self.cfg.main_ladder, target=None))
        return specs

    def _default_governor(self, spec: PhaseSpec) -> AdaptiveGovernor:
        return AdaptiveGovernor(
            spec,
            settings=GovernorSettings.from_config(self.cfg),
            supervisor=self.supervisor,
            monitor=self.monitor,
            recovery=self.recovery,
            executor_command=self.cfg.executor_command,
            build_dir=self.cfg.build_dir,
            decision_log=self.decisions,
        )

    def run_phases(self) -> List[PhaseResult]:
        results: List[PhaseResult] = []
        for spec in self.phases():
            banner = "=" * 56
            logger.info(banner)
            if spec.scoped:
                logger.info(">> %s: adaptive build for '%s'", spec.name.upper(), spec.target)
            else:
                logger.info(">> %s: adaptive build for all remaining targets", spec.name.upper())
            logger.info(banner)
            results.append(self._governor_factory(spec).run())
        return results

    def package(self, extra_args: Sequence[str] = ()) -> None:
        code = self.packager(self.cfg.build_dir, list(extra_args))
        if code != 0:
            self.decisions.record("packaging_failed", exit_code=code)
            raise PackagingError(
                f"final packaging failed (exit code {code})", packager_exit_code=code
            )
        self.decisions.record("packaging_succeeded")

    def run(self, package_args: Sequence[str] = (), *, skip_preflight: bool = False) -> List[PhaseResult]:
        if not skip_preflight:
            preflight(self.cfg)
        results = self.run_phases()
        logger.info("*** BUILD SUCCEEDED; running final packaging ***")
        self.package(package_args)
        logger.info("*** BUILD & PACKAGE PROCESS SUCCEEDED ***")
        return results


__all__ = [
    "PHASE1_NAME",
    "PHASE2_NAME",
    "PhaseOrchestrator",
    "make_command_packager",
    "preflight",
]
