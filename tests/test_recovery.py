# tests/test_recovery.py
import json
import os
import subprocess
import sys
import time

import psutil
import pytest

from buildgov.extensions.decision_log import DecisionLog
from buildgov.extensions.recovery import (
    RecoveryActions,
    clean_recent_outputs,
    cooldown,
    reap_zombies,
)
from buildgov.state import KillReason

# A process group id no child of the test run belongs to.
NO_GROUP = 2**22 + 7


def _touch(path, age_sec=0.0):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x")
    t = time.time() - age_sec
    os.utime(path, (t, t))
    return path


def test_clean_recent_outputs_only_removes_fresh_matching_files(tmp_path):
    fresh_obj = _touch(tmp_path / "a" / "foo.o")
    fresh_dep = _touch(tmp_path / "a" / "b" / "foo.d")
    stale_obj = _touch(tmp_path / "old.o", age_sec=3600)
    fresh_src = _touch(tmp_path / "foo.cpp")

    removed = clean_recent_outputs(tmp_path, 15, ("*.o", "*.os", "*.d"))

    assert set(removed) == {fresh_obj, fresh_dep}
    assert not fresh_obj.exists() and not fresh_dep.exists()
    assert stale_obj.exists()
    assert fresh_src.exists()


def test_clean_recent_outputs_missing_root(tmp_path):
    assert clean_recent_outputs(tmp_path / "nope", 15, ("*.o",)) == []


def test_clean_recent_outputs_window_uses_now(tmp_path):
    obj = _touch(tmp_path / "x.o", age_sec=100)
    assert clean_recent_outputs(tmp_path, 15, ("*.o",)) == []
    assert clean_recent_outputs(tmp_path, 15, ("*.o",), now=time.time() - 90) == [obj]


def test_cooldown_uses_injected_sleep():
    slept = []
    cooldown(30, sleep=slept.append)
    assert slept == [30.0]


def test_reap_zombies_without_children():
    assert reap_zombies(pgid=NO_GROUP) == 0


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_reap_zombies_collects_exited_group_child():
    proc = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    deadline = time.time() + 10
    while time.time() < deadline:
        try:
            if psutil.Process(proc.pid).status() == psutil.STATUS_ZOMBIE:
                break
        except psutil.NoSuchProcess:
            break
        time.sleep(0.05)

    assert reap_zombies(proc.pid) == 1
    assert reap_zombies(proc.pid) == 0


def test_after_forced_termination_cooldown_only_for_memory(tmp_path):
    obj = _touch(tmp_path / "foo.o")
    slept = []
    rec = RecoveryActions(
        build_dir=tmp_path,
        cleanup_window_sec=15,
        cleanup_patterns=["*.o"],
        cooldown_sec=30,
        sleep=slept.append,
    )

    rec.after_forced_termination(KillReason.CPU_STALL, NO_GROUP)
    assert not obj.exists()
    assert slept == []

    rec.after_forced_termination(KillReason.PREDICTIVE_UPSHIFT, NO_GROUP)
    assert slept == []

    rec.after_forced_termination(KillReason.MEMORY_DOWNSHIFT, NO_GROUP)
    assert slept == [30.0]

    rec.after_forced_termination(KillReason.MEMORY_DOWNSHIFT, NO_GROUP, allow_cooldown=False)
    assert slept == [30.0]


def test_decision_log_writes_jsonl(tmp_path):
    path = tmp_path / "logs" / "decisions.jsonl"
    log = DecisionLog(path)
    log.record("attempt_started", phase="phase2", concurrency=32)
    log.record("forced_termination", reason=KillReason.MEMORY_DOWNSHIFT.value)

    lines = [json.loads(x) for x in path.read_text(encoding="utf-8").splitlines()]
    assert [x["event"] for x in lines] == ["attempt_started", "forced_termination"]
    assert lines[0]["concurrency"] == 32
    assert "ts" in lines[0]
    # File-backed logs do not accumulate events in memory by default.
    assert log.events == []

    mirrored = DecisionLog(tmp_path / "mirror.jsonl", keep_in_memory=True)
    mirrored.record("forced_termination", reason="cpu_stall")
    assert len(mirrored.of_type("forced_termination")) == 1


def test_decision_log_in_memory_only():
    log = DecisionLog()
    entry = log.record("phase_succeeded", attempts=1)
    assert log.events == [entry]
    assert log.path is None
