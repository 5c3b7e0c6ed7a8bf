from __future__ import annotations

import fnmatch
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from ..state import KillReason

logger = logging.getLogger("recovery")


def clean_recent_outputs(
    root: Path,
    window_sec: float,
    patterns: Sequence[str],
    *,
    now: Optional[float] = None,
) -> List[Path]:
    """
    Delete build artifacts under `root` whose name matches one of `patterns`
    and whose mtime falls within the last `window_sec` seconds.

    A task killed mid-write can leave a truncated object file with a fresh
    timestamp; the executor would treat it as up to date on the next run.
    """
    root = Path(root)
    cutoff = (time.time() if now is None else float(now)) - float(window_sec)
    removed: List[Path] = []

    logger.info(
        "[Recovery] cleaning artifacts modified in the last %.0fs under %s",
        window_sec,
        root,
    )
    if not root.is_dir():
        logger.warning("[Recovery] cleanup root %s does not exist; nothing to clean", root)
        return removed

    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if not any(fnmatch.fnmatch(name, pat) for pat in patterns):
                continue
            p = Path(dirpath) / name
            try:
                if p.stat().st_mtime < cutoff:
                    continue
                p.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("[Recovery] could not remove %s: %s", p, e)
                continue
            removed.append(p)
            logger.info("[Recovery]   removed %s", p)

    if not removed:
        logger.info("[Recovery] no recently modified artifacts found")
    return removed


def reap_zombies(pgid: Optional[int] = None) -> int:
    """
    Collect exited-but-unreaped children without blocking.

    With `pgid`, only children in that process group are waited on; otherwise
    any child of this process. Returns the number of children reaped.
    """
    target = -int(pgid) if pgid is not None else -1
    reaped = 0
    while True:
        try:
            pid, _status = os.waitpid(target, os.WNOHANG)
        except ChildProcessError:
            break
        if pid == 0:
            # Children exist but none has exited yet.
            break
        reaped += 1
    if reaped:
        logger.info("[Recovery] reaped %d zombie process(es)", reaped)
    return reaped


def cooldown(duration_sec: float, *, sleep: Callable[[float], None] = time.sleep) -> None:
    logger.info("[Recovery] high memory event; cooling down for %.0fs", duration_sec)
    sleep(max(0.0, float(duration_sec)))
    logger.info("[Recovery] cooldown complete")


@dataclass
class RecoveryActions:
    """
    Post-termination routine run by the governor while no attempt is alive:
    cleanup, then zombie reap, then cooldown for memory-triggered kills.
    """

    build_dir: Path
    cleanup_window_sec: float
    cleanup_patterns: Iterable[str]
    cooldown_sec: float
    sleep: Callable[[float], None] = time.sleep

    def clean_recent_outputs(self) -> List[Path]:
        return clean_recent_outputs(
            self.build_dir, self.cleanup_window_sec, tuple(self.cleanup_patterns)
        )

    def reap_zombies(self, pgid: Optional[int] = None) -> int:
        return reap_zombies(pgid)

    def cooldown(self) -> None:
        cooldown(self.cooldown_sec, sleep=self.sleep)

    def after_forced_termination(
        self,
        reason: Optional[KillReason],
        pgid: Optional[int] = None,
        *,
        allow_cooldown: bool = True,
    ) -> None:
        self.clean_recent_outputs()
        self.reap_zombies(pgid)
        if allow_cooldown and reason is not None and reason.memory_related:
            self.cooldown()


__all__ = [
    "RecoveryActions",
    "clean_recent_outputs",
    "cooldown",
    "reap_zombies",
]
