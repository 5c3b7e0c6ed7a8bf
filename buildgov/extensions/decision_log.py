from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class DecisionLog:
    """
    Line based JSON record of governor decisions (attempt starts, forced
    terminations, aborted upshifts, phase results).

    With no path configured, events are only kept in memory; with a path they
    go to the file only, unless keep_in_memory is set. Writing is best-effort
    and never interrupts the build.
    """

    def __init__(self, path: Optional[Path] = None, *, keep_in_memory: Optional[bool] = None) -> None:
        self.path = Path(path) if path is not None else None
        self.keep_in_memory = self.path is None if keep_in_memory is None else bool(keep_in_memory)
        self.events: List[Dict[str, Any]] = []

    def record(self, event: str, **fields: Any) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
        }
        entry.update(fields)
        if self.keep_in_memory:
            self.events.append(entry)
        self._append(entry)
        return entry

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("event") == event]

    def _append(self, entry: Dict[str, Any]) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                json.dump(entry, f, ensure_ascii=False, default=str)
                f.write("\n")
        except Exception:
            logger.debug("[DecisionLog] failed writing to %s", self.path, exc_info=True)


__all__ = ["DecisionLog"]
