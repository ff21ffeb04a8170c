"""Shared helpers."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> None:
    """Send logs to the console and, when ``log_dir`` is given, to ``agent.log``."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(h, "_agent_module", False) for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._agent_module = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.abspath(os.path.join(log_dir, "agent.log"))
        if not any(getattr(h, "baseFilename", None) == log_path for h in root.handlers):
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
