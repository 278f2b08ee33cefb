from __future__ import annotations

import logging
import os
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, List, Optional


LOG_ENV_VAR = "FORWARDER_ACTIVE_LOG"
LOG_DIR_ENV_VAR = "FORWARDER_LOG_DIR"
LOG_LEVEL_ENV_VAR = "FORWARDER_LOG_LEVEL"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
BUFFER_FORMAT = "%(asctime)s [%(levelname)s]: %(message)s"


def _running_in_cloud() -> bool:
    cloud_markers = (
        "K_SERVICE",
        "CLOUD_RUN_SERVICE",
        "CLOUD_RUN_JOB",
        "GAE_SERVICE",
        "RENDER",
        "FLY_APP_NAME",
    )
    return any(os.getenv(marker) for marker in cloud_markers)


def configure_logging() -> Optional[Path]:
    """
    Ensure logging is configured for the current process.

    Returns the active log file path when running locally, otherwise None.
    """
    if getattr(configure_logging, "_configured", False):
        return getattr(configure_logging, "_log_path", None)

    log_path: Optional[Path] = None
    handlers: List[logging.Handler] = []

    if _running_in_cloud():
        handlers.append(logging.StreamHandler())
    else:
        log_dir = Path(os.getenv(LOG_DIR_ENV_VAR, "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = log_dir / f"forwarder_{timestamp}.log"
        handlers.extend(
            [
                logging.StreamHandler(),
                logging.FileHandler(log_path, mode="w", encoding="utf-8"),
            ]
        )

    log_level_name = os.getenv(LOG_LEVEL_ENV_VAR, "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # A buffer may lower the root level below FORWARDER_LOG_LEVEL; console and file keep it
    for handler in handlers:
        handler.setLevel(log_level)

    # force=True drops every root handler; buffers feeding /logs must survive it
    root = logging.getLogger()
    buffers = [handler for handler in root.handlers if isinstance(handler, LogBuffer)]

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers or None,
        force=True,
    )
    for buffer in buffers:
        buffer.attach(root)

    if log_path:
        os.environ[LOG_ENV_VAR] = str(log_path)

    configure_logging._configured = True  # type: ignore[attr-defined]
    configure_logging._log_path = log_path  # type: ignore[attr-defined]
    return log_path


class LogBuffer(logging.Handler):
    """
    Keeps the most recent formatted log lines in memory for the /logs endpoint.

    Oldest lines are evicted first once capacity is reached.
    """

    def __init__(self, capacity: int = 100, *, level: int = logging.INFO) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be a positive integer.")
        super().__init__(level=level)
        self.capacity = capacity
        self._entries: Deque[str] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()
        self.setFormatter(logging.Formatter(BUFFER_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:  # noqa: BLE001 - logging must never raise
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(line)

    def entries(self) -> List[str]:
        with self._entries_lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def attach(self, logger: Optional[logging.Logger] = None) -> "LogBuffer":
        """
        Add the buffer to ``logger`` (root by default).

        The logger's level is lowered to the buffer's level when needed, so INFO
        tick lines reach /logs even if configure_logging() never ran in this
        process (``uvicorn app:create_app --factory``, reload workers).
        """
        target = logger or logging.getLogger()
        if self not in target.handlers:
            target.addHandler(self)
        if target.getEffectiveLevel() > self.level:
            target.setLevel(self.level)
        return self

    def detach(self, logger: Optional[logging.Logger] = None) -> None:
        target = logger or logging.getLogger()
        target.removeHandler(self)
