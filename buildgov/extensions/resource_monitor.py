from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import psutil  # type: ignore

from ..errors import HostProbeError

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

# Fields of psutil.cpu_times() that count towards total time. guest/guest_nice
# are already included in user/nice on Linux, so they are left out.
_CPU_TOTAL_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal")
_CPU_IDLE_FIELDS = ("idle", "iowait")


@dataclass(frozen=True, slots=True)
class ResourceSample:
    """
    One host observation.

    cpu_percent is None when utilization is unknown (first sample, or no
    CPU time elapsed between two snapshots).
    """

    used_memory_kb: int
    total_memory_kb: int
    cpu_percent: Optional[float]

    @property
    def cpu_known(self) -> bool:
        return self.cpu_percent is not None


def _cpu_counters(times: Any) -> Tuple[float, float]:
    total = sum(float(getattr(times, f, 0.0) or 0.0) for f in _CPU_TOTAL_FIELDS)
    idle = sum(float(getattr(times, f, 0.0) or 0.0) for f in _CPU_IDLE_FIELDS)
    return idle, total


class ResourceMonitor:
    """
    Synchronous host sampler.

    - Memory: psutil.virtual_memory(); used = total - available.
    - CPU: busy share of the CPU time that elapsed since the previous call,
      computed from psutil.cpu_times() deltas.

    Only the previous raw CPU counters are kept between calls. Any probe
    failure raises HostProbeError: governing without memory visibility is
    not safe.
    """

    def __init__(
        self,
        *,
        memory_probe: Optional[Callable[[], Any]] = None,
        cpu_probe: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._memory_probe = memory_probe or psutil.virtual_memory
        self._cpu_probe = cpu_probe or psutil.cpu_times
        self._last_idle: Optional[float] = None
        self._last_total: Optional[float] = None

    def reset(self) -> None:
        self._last_idle = None
        self._last_total = None

    def read_memory_kb(self) -> Tuple[int, int]:
        """Return (used_kb, total_kb)."""
        try:
            vm = self._memory_probe()
            total = int(vm.total)
            available = int(vm.available)
        except Exception as e:
            raise HostProbeError(f"cannot read host memory counters: {e}") from e
        if total <= 0:
            raise HostProbeError(f"host reported non-positive memory total: {total}")
        return (total - available) // 1024, total // 1024

    def read_cpu_percent(self) -> Optional[float]:
        """
        Busy percentage since the previous call, or None on the first call
        or when no CPU time has elapsed.
        """
        try:
            idle, total = _cpu_counters(self._cpu_probe())
        except Exception as e:
            raise HostProbeError(f"cannot read host CPU counters: {e}") from e

        if self._last_total is None or self._last_idle is None:
            self._last_idle, self._last_total = idle, total
            return None

        delta_total = total - self._last_total
        delta_idle = idle - self._last_idle
        if delta_total <= 0:
            # Keep the older snapshot so the next delta spans a real interval.
            return None

        self._last_idle, self._last_total = idle, total
        busy = max(0.0, delta_total - delta_idle)
        return round(100.0 * busy / delta_total, 2)

    def sample(self) -> ResourceSample:
        used_kb, total_kb = self.read_memory_kb()
        cpu = self.read_cpu_percent()
        return ResourceSample(
            used_memory_kb=used_kb,
            total_memory_kb=total_kb,
            cpu_percent=cpu,
        )


__all__ = [
    "ResourceMonitor",
    "ResourceSample",
]
