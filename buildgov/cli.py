from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
from pathlib import Path
from typing import Iterable, List, Optional

from .config import GovernorConfig, load_config
from .errors import EXIT_OK, EXIT_PREFLIGHT, BuildCancelled, GovernorError
from .extensions.logging import LoggingExtension
from .orchestrator import PhaseOrchestrator

logger = logging.getLogger("buildgov")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="buildgov",
        description=(
            "Adaptive two-phase build: heavy target first at conservative "
            "concurrency, then the full build, then packaging. Arguments after "
            "'--' are forwarded to the packaging command."
        ),
    )
    p.add_argument("--build-dir", type=Path, default=None, help="Overrides BUILD_DIR")
    p.add_argument("--project-root", type=Path, default=None, help="Overrides PROJECT_ROOT")
    p.add_argument("--log-file", type=Path, default=None, help="Also write a session log here")
    p.add_argument("--decision-log", type=Path, default=None, help="JSONL decision log (overrides DECISION_LOG_PATH)")
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    p.add_argument("--skip-preflight", action="store_true")
    p.add_argument("package_args", nargs=argparse.REMAINDER)
    args = p.parse_args(list(argv) if argv is not None else None)
    if args.package_args and args.package_args[0] == "--":
        args.package_args = args.package_args[1:]
    return args


def apply_overrides(cfg: GovernorConfig, args: argparse.Namespace) -> GovernorConfig:
    changes = {}
    if args.project_root is not None:
        changes["project_root"] = args.project_root.expanduser().resolve()
    if args.build_dir is not None:
        bd = args.build_dir.expanduser()
        root = changes.get("project_root", cfg.project_root)
        changes["build_dir"] = bd if bd.is_absolute() else root / bd
    if args.decision_log is not None:
        changes["decision_log_path"] = args.decision_log.expanduser()
    return dataclasses.replace(cfg, **changes) if changes else cfg


def _make_signal_handler():
    cancelled = []

    def _on_signal(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if cancelled:
            # Cleanup of the first cancellation is still running.
            logger.warning("[Signal] %s received again; cleanup already in progress.", name)
            return
        cancelled.append(name)
        logger.warning("[Signal] %s received; stopping the build and cleaning up.", name)
        raise BuildCancelled(f"{name} received", signal_name=name)

    return _on_signal


def _install_signal_handlers() -> None:
    _on_signal = _make_signal_handler()
    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    logging_ext = LoggingExtension(
        global_level=getattr(logging, args.log_level),
        session_log_path=args.log_file,
    )

    exit_code = EXIT_OK
    try:
        try:
            cfg = apply_overrides(load_config(), args)
        except ValueError as e:
            logger.error("Invalid configuration: %s", e)
            exit_code = EXIT_PREFLIGHT
        else:
            _install_signal_handlers()
            orchestrator = PhaseOrchestrator(cfg)
            package_args: List[str] = list(args.package_args or [])
            orchestrator.run(package_args, skip_preflight=bool(args.skip_preflight))
    except GovernorError as e:
        logger.error("*** %s: %s ***", type(e).__name__, e)
        exit_code = e.exit_code
    finally:
        logging_ext.close()

    if exit_code != 0:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
