from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def attach_file_handler(
    path: Path | str,
    *,
    logger_name: str = "concord_governance",
    level: int = logging.INFO,
) -> RotatingFileHandler:
    """Route a package logger to a rotating file alongside its normal propagation."""
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    target = logging.getLogger(logger_name)
    target.setLevel(level)
    target.addHandler(handler)
    return handler
