from __future__ import annotations

import os
import shlex
from typing import Optional, Tuple


# ========== Env helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# parse CSV-ish envs into tuples (trim blanks)
def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    raw = getenv_str(name, default_csv)
    parts = [x.strip() for x in raw.split(",")]
    return tuple(p for p in parts if p)

def getenv_int_list(name: str, default_csv: str) -> Tuple[int, ...]:
    """
    Parse a comma or space separated list of integers ("32,16,8" or "32 16 8").
    Malformed values raise ValueError; a ladder typo must not be silently
    replaced by the default.
    """
    raw = getenv_str(name, default_csv)
    parts = [x for x in raw.replace(",", " ").split() if x]
    return tuple(int(p) for p in parts)

def getenv_argv(name: str, default: str) -> Tuple[str, ...]:
    """Shell-style split of a command line held in an env var."""
    raw = os.getenv(name)
    if raw is None:
        raw = default
    return tuple(shlex.split(raw))


# ========== Units ==========

KB_PER_GB = 1024 * 1024

def gb_to_kb(gb: float) -> int:
    return int(gb * KB_PER_GB)

def kb_to_gb(kb: int) -> int:
    return int(kb) // KB_PER_GB
