# tests/test_cli.py
import logging
import signal

import pytest

from buildgov import cli
from buildgov.errors import BuildCancelled, BuildFailedError, HostProbeError


@pytest.fixture(autouse=True)
def _no_signal_handlers(monkeypatch):
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda: None)
    monkeypatch.delenv("JOBS_LEVELS", raising=False)
    yield
    # LoggingExtension.close() detaches its handlers; keep pytest's root level sane.
    logging.getLogger().setLevel(logging.WARNING)


class RecordingOrchestrator:
    instances = []
    raises = None

    def __init__(self, cfg):
        self.cfg = cfg
        self.calls = []
        RecordingOrchestrator.instances.append(self)

    def run(self, package_args=(), *, skip_preflight=False):
        self.calls.append((list(package_args), skip_preflight))
        if RecordingOrchestrator.raises is not None:
            raise RecordingOrchestrator.raises
        return []


@pytest.fixture
def orchestrator(monkeypatch):
    RecordingOrchestrator.instances = []
    RecordingOrchestrator.raises = None
    monkeypatch.setattr(cli, "PhaseOrchestrator", RecordingOrchestrator)
    return RecordingOrchestrator


def test_parse_args_package_passthrough(tmp_path):
    args = cli.parse_args(["--build-dir", str(tmp_path), "--", "--plat-name", "manylinux"])
    assert args.build_dir == tmp_path
    assert args.package_args == ["--plat-name", "manylinux"]

    args = cli.parse_args([])
    assert args.package_args == []
    assert args.log_level == "INFO"


def test_apply_overrides_relative_build_dir(tmp_path):
    from buildgov.config import load_config

    args = cli.parse_args(["--project-root", str(tmp_path), "--build-dir", "out"])
    cfg = cli.apply_overrides(load_config(), args)
    assert cfg.project_root == tmp_path.resolve()
    assert cfg.build_dir == tmp_path.resolve() / "out"


def test_main_success_returns_normally(orchestrator, tmp_path):
    cli.main(["--skip-preflight", "--build-dir", str(tmp_path), "--", "--universal"])
    (inst,) = orchestrator.instances
    assert inst.calls == [(["--universal"], True)]
    assert inst.cfg.build_dir == tmp_path


@pytest.mark.parametrize(
    "exc, code",
    [
        (BuildFailedError("x", phase="phase2", executor_exit_code=1), 2),
        (HostProbeError("no /proc"), 4),
        (BuildCancelled("SIGINT received", signal_name="SIGINT"), 130),
    ],
)
def test_main_maps_errors_to_exit_codes(orchestrator, exc, code):
    orchestrator.raises = exc
    with pytest.raises(SystemExit) as ei:
        cli.main([])
    assert ei.value.code == code


def test_main_invalid_config_is_preflight_failure(orchestrator, monkeypatch):
    monkeypatch.setenv("JOBS_LEVELS", "4,8")
    with pytest.raises(SystemExit) as ei:
        cli.main([])
    assert ei.value.code == 1
    assert orchestrator.instances == []


def test_main_writes_session_log(orchestrator, tmp_path):
    log_file = tmp_path / "logs" / "session.log"
    orchestrator.raises = BuildFailedError("phase 'phase2' failed", phase="phase2", executor_exit_code=2)
    with pytest.raises(SystemExit):
        cli.main(["--log-file", str(log_file)])
    text = log_file.read_text(encoding="utf-8")
    assert "BuildFailedError" in text


def test_signal_handler_cancels_only_once():
    handler = cli._make_signal_handler()
    with pytest.raises(BuildCancelled) as ei:
        handler(signal.SIGINT, None)
    assert ei.value.signal_name == "SIGINT"
    # Further signals while cleanup runs are logged, not raised.
    assert handler(signal.SIGTERM, None) is None
    assert handler(signal.SIGINT, None) is None
