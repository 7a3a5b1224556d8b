from __future__ import annotations
import logging
import logging.config
import os
from pathlib import Path
from typing import Optional
import yaml

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LEVEL_ENV = "REPORT_JOBS_LOG_LEVEL"


def setup_logging(config_path: str = "configs/logging.yaml", level: Optional[str] = None) -> None:
    """
    Configure logging from a YAML dictConfig file.

    Directories for file handlers are created before the config is applied. The
    root level can be overridden with `level` or the REPORT_JOBS_LOG_LEVEL
    environment variable.
    """
    override = (level or os.environ.get(LEVEL_ENV) or "").upper() or None
    path = Path(config_path)
    if not path.exists():
        logging.basicConfig(level=override or logging.INFO, format=LOG_FORMAT)
        return

    with path.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    for handler in (cfg.get("handlers") or {}).values():
        filename = handler.get("filename")
        if filename:
            Path(filename).parent.mkdir(parents=True, exist_ok=True)

    if override:
        cfg.setdefault("root", {})["level"] = override
    logging.config.dictConfig(cfg)


def get_logger(name: str) -> logging.Logger:
    """Get a logger in the report_jobs hierarchy."""
    if name != "report_jobs" and not name.startswith("report_jobs."):
        name = f"report_jobs.{name}"
    return logging.getLogger(name)
