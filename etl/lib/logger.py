"""
Centralized logging for the attribution ETL.
Console output plus an optional daily log file under logs/.

Usage:
    from etl.lib.logger import setup_logger
    logger = setup_logger(__name__)
    logger.info("Ingestion started")
"""
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

# Project root (etl/lib/ -> project)
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
LOG_DIR = PROJECT_ROOT / "logs"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _file_logging_enabled() -> bool:
    return os.getenv("LOG_TO_FILE", "true").lower() not in ("0", "false", "no")


def setup_logger(
    name: str,
    level: str = None,
    log_to_file: bool = None,
    log_dir: Path = None,
) -> logging.Logger:
    """
    Configure and return a logger instance.

    Args:
        name: Logger name (typically the module or job name).
        level: Logging level; defaults to LOG_LEVEL env var, then INFO.
        log_to_file: Also write to the daily log file (default: LOG_TO_FILE env var).
        log_dir: Directory for log files (default: project_root/logs).

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)

    # Handlers are attached once per logger name
    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_to_file is None:
        log_to_file = _file_logging_enabled()

    if log_to_file:
        target_dir = Path(log_dir) if log_dir else LOG_DIR
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            log_file = target_dir / f"{datetime.now().strftime('%Y%m%d')}_attribution_etl.log"
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning("File logging disabled (%s): %s", target_dir, e)

    logger.propagate = False
    return logger
