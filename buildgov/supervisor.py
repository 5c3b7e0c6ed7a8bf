from __future__ import annotations

import logging
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import psutil  # type: ignore
from tenacity import Retrying, retry_if_result, stop_after_delay, wait_fixed

from .errors import ExecutorLaunchError
from .extensions.recovery import reap_zombies

logger = logging.getLogger("supervisor")

# Escalation order used by terminate(): interrupt, then terminate, then kill.
TERMINATION_SIGNALS: Tuple[Tuple[str, int], ...] = (
    ("SIGINT", signal.SIGINT),
    ("SIGTERM", signal.SIGTERM),
    ("SIGKILL", signal.SIGKILL),
)

_EOF = object()


@dataclass(slots=True)
class BuildAttempt:
    """
    One executor subprocess running at a fixed concurrency.

    The process is the leader of its own process group (pgid == pid), so the
    whole task tree can be signalled at once.
    """

    concurrency: int
    argv: Tuple[str, ...]
    process: subprocess.Popen
    pgid: int
    started_at: float
    target: Optional[str] = None
    output_closed: bool = False
    lines_seen: int = 0
    _lines: "queue.Queue[object]" = field(default_factory=queue.Queue)
    _reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self.process.pid


def live_group_members(pgid: int) -> List[int]:
    """PIDs in process group `pgid` that are not zombies."""
    members: List[int] = []
    for p in psutil.process_iter(["pid", "status"]):
        pid = p.info["pid"]
        try:
            if os.getpgid(pid) != pgid:
                continue
        except OSError:
            continue
        if p.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        members.append(pid)
    return members


def _pump_output(stream, q: "queue.Queue[object]") -> None:
    try:
        for line in iter(stream.readline, ""):
            q.put(line.rstrip("\r\n"))
    except (OSError, ValueError):
        # Stream closed underneath us during shutdown.
        pass
    finally:
        q.put(_EOF)


class ProcessSupervisor:
    """
    Spawns the build executor in a new session and exposes its merged
    stdout/stderr as a line queue with timed reads.

    Termination escalates SIGINT -> SIGTERM -> SIGKILL against the whole
    process group, waiting up to `termination_wait_sec` after each signal.
    """

    def __init__(
        self,
        *,
        termination_wait_sec: float = 10.0,
        poll_step_sec: float = 0.5,
        line_buffer: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.termination_wait_sec = float(termination_wait_sec)
        self.poll_step_sec = max(0.01, float(poll_step_sec))
        self._sleep = sleep
        self._line_buffer_prefix: Tuple[str, ...] = ()
        if line_buffer:
            stdbuf = shutil.which("stdbuf")
            if stdbuf:
                self._line_buffer_prefix = (stdbuf, "-oL")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def build_argv(
        self, command: Sequence[str], concurrency: int, target: Optional[str] = None
    ) -> Tuple[str, ...]:
        argv = [*self._line_buffer_prefix, *command, f"-j{int(concurrency)}"]
        if target:
            argv.append(target)
        return tuple(argv)

    def start(
        self,
        command: Sequence[str],
        concurrency: int,
        *,
        target: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[dict] = None,
    ) -> BuildAttempt:
        argv = self.build_argv(command, concurrency, target)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutorLaunchError(f"cannot launch executor {argv!r}: {e}") from e

        attempt = BuildAttempt(
            concurrency=int(concurrency),
            argv=argv,
            process=proc,
            pgid=proc.pid,
            started_at=time.monotonic(),
            target=target,
        )
        reader = threading.Thread(
            target=_pump_output,
            args=(proc.stdout, attempt._lines),
            name=f"executor-output-{proc.pid}",
            daemon=True,
        )
        attempt._reader = reader
        reader.start()
        logger.debug("[Supervisor] started pid=%d argv=%s", proc.pid, " ".join(argv))
        return attempt

    def is_alive(self, attempt: BuildAttempt) -> bool:
        return attempt.process.poll() is None

    def exit_status(self, attempt: BuildAttempt) -> int:
        rc = attempt.process.poll()
        if rc is None:
            raise RuntimeError(f"executor pid={attempt.pid} is still running")
        return int(rc)

    def wait(self, attempt: BuildAttempt, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return int(attempt.process.wait(timeout=timeout))
        except subprocess.TimeoutExpired:
            return None

    def close(self, attempt: BuildAttempt) -> bool:
        """
        Release the reader thread and pipe once the process is gone.

        Returns False when some group member still holds the output pipe
        open: the reader stays blocked in readline() and closing the stream
        under it would block too, so both are left to the daemon thread.
        """
        reader = attempt._reader
        if reader is not None:
            reader.join(timeout=2.0)
            if reader.is_alive():
                logger.warning(
                    "[Supervisor] output of group %d still held open by a surviving process; "
                    "leaving the pipe to the reader thread",
                    attempt.pgid,
                )
                return False
        stream = attempt.process.stdout
        if stream is not None:
            try:
                stream.close()
            except OSError:
                pass
        return True

    # ------------------------------------------------------------------ #
    # Output
    # ------------------------------------------------------------------ #

    def poll_line(self, attempt: BuildAttempt, timeout: float) -> Optional[str]:
        """
        Return the next output line within `timeout` seconds, else None.

        Once output has hit EOF the call degrades to a bounded wait on the
        process itself, so it still paces the control loop.
        """
        if attempt.output_closed:
            self.wait(attempt, timeout=max(0.0, float(timeout)))
            return None
        try:
            item = attempt._lines.get(timeout=max(0.0, float(timeout)))
        except queue.Empty:
            return None
        if item is _EOF:
            attempt.output_closed = True
            return None
        attempt.lines_seen += 1
        return str(item)

    def drain(self, attempt: BuildAttempt) -> List[str]:
        """Lines already buffered, without waiting. Used after the process exits."""
        if attempt._reader is not None and not self.is_alive(attempt):
            attempt._reader.join(timeout=2.0)
        out: List[str] = []
        while not attempt.output_closed:
            try:
                item = attempt._lines.get_nowait()
            except queue.Empty:
                break
            if item is _EOF:
                attempt.output_closed = True
                break
            attempt.lines_seen += 1
            out.append(str(item))
        return out

    # ------------------------------------------------------------------ #
    # Termination
    # ------------------------------------------------------------------ #

    def group_alive(self, attempt: BuildAttempt) -> bool:
        if attempt.process.poll() is not None:
            # Leader already reaped above; collect any group members that were
            # re-parented onto us so they do not keep the group visible.
            reap_zombies(attempt.pgid)
        try:
            os.killpg(attempt.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        # killpg also succeeds while only zombies are left (e.g. orphans
        # waiting on a non-reaping init); those do not count as alive.
        return bool(live_group_members(attempt.pgid))

    def _wait_group_gone(self, attempt: BuildAttempt) -> bool:
        retrying = Retrying(
            stop=stop_after_delay(self.termination_wait_sec),
            wait=wait_fixed(self.poll_step_sec),
            retry=retry_if_result(bool),
            retry_error_callback=lambda rs: rs.outcome.result(),
            sleep=self._sleep,
        )
        still_alive = retrying(self.group_alive, attempt)
        return not still_alive

    def terminate(self, attempt: BuildAttempt) -> bool:
        """
        Escalating group termination. Returns True once the group is
        confirmed gone, False if it survived every signal (logged, not raised).
        """
        if not self.group_alive(attempt):
            return True

        logger.info("[Supervisor] terminating process group %d", attempt.pgid)
        for name, sig in TERMINATION_SIGNALS:
            logger.info("[Supervisor]   sending %s to all processes in group", name)
            try:
                os.killpg(attempt.pgid, sig)
            except ProcessLookupError:
                logger.info("[Supervisor]   process group terminated cleanly")
                attempt.process.poll()
                return True
            except PermissionError as e:
                logger.warning("[Supervisor]   %s to group %d refused: %s", name, attempt.pgid, e)
            if self._wait_group_gone(attempt):
                logger.info("[Supervisor]   process group terminated cleanly")
                return True

        logger.warning(
            "[Supervisor] process group %d did not terminate cleanly after all signals",
            attempt.pgid,
        )
        return False


__all__ = [
    "BuildAttempt",
    "ProcessSupervisor",
    "TERMINATION_SIGNALS",
]
