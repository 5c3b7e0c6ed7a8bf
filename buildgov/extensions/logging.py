from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

# Executor output is echoed through this logger with a bare format so the
# build's own progress lines stay readable on the console.
EXECUTOR_LOGGER_NAME = "buildgov.executor"


class LoggingExtension:
    """
    Logging plugin/extension.

    Responsibilities:
      - Installs a console handler (single, shared) for governor annotations.
      - Installs a separate bare-format console handler for echoed executor output.
      - Optionally mirrors everything into a session log file.
    """

    __slots__ = (
        "global_level",
        "_console_handler",
        "_executor_handler",
        "_session_handler",
    )

    def __init__(
        self,
        *,
        global_level: int = logging.INFO,
        session_log_path: Optional[Path] = None,
    ) -> None:
        self.global_level = int(global_level)
        self._console_handler: Optional[logging.Handler] = None
        self._executor_handler: Optional[logging.Handler] = None
        self._session_handler: Optional[logging.Handler] = None

        self._install_console(self.global_level)
        self._install_executor_echo()

        if session_log_path:
            session_log_path = Path(session_log_path)
            session_log_path.parent.mkdir(parents=True, exist_ok=True)
            sh = logging.FileHandler(session_log_path, mode="a", encoding="utf-8")
            sh.setLevel(logging.DEBUG)
            sh.setFormatter(
                logging.Formatter(
                    fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            logging.getLogger().addHandler(sh)
            logging.getLogger(EXECUTOR_LOGGER_NAME).addHandler(sh)
            self._session_handler = sh

        # Root permissive; handler levels do the filtering
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        """
        Install a single console handler for the root logger, replacing any
        existing plain StreamHandler. Keeps console logging deterministic.
        """
        root = logging.getLogger()
        for h in list(root.handlers):
            if isinstance(h, logging.StreamHandler) and not isinstance(
                h, logging.FileHandler
            ):
                root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        root.addHandler(ch)
        self._console_handler = ch

    def _install_executor_echo(self) -> None:
        ex = logging.getLogger(EXECUTOR_LOGGER_NAME)
        for h in list(ex.handlers):
            ex.removeHandler(h)
        eh = logging.StreamHandler()
        eh.setLevel(logging.INFO)
        eh.setFormatter(logging.Formatter("%(message)s"))
        ex.addHandler(eh)
        ex.setLevel(logging.INFO)
        ex.propagate = False
        self._executor_handler = eh

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        """
        Flush and detach the handlers installed by this extension.
        """
        root = logging.getLogger()
        ex = logging.getLogger(EXECUTOR_LOGGER_NAME)
        for h, owners in (
            (self._console_handler, (root,)),
            (self._executor_handler, (ex,)),
            (self._session_handler, (root, ex)),
        ):
            if h is None:
                continue
            for owner in owners:
                owner.removeHandler(h)
            h.flush()
            h.close()
        self._console_handler = None
        self._executor_handler = None
        self._session_handler = None


def get_executor_logger() -> logging.Logger:
    return logging.getLogger(EXECUTOR_LOGGER_NAME)


__all__ = [
    "EXECUTOR_LOGGER_NAME",
    "LoggingExtension",
    "get_executor_logger",
]
