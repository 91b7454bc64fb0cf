# utils/logger.py
import os
import logging
from typing import Optional

DEFAULT_LOG_DIR = "logs"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_level(level: Optional[int]) -> int:
    """Use the explicit level, else LOG_LEVEL from the environment, else INFO."""
    if level is not None:
        return level
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(
    logger_name: str,
    log_file: Optional[str] = None,
    level: Optional[int] = None,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Set up and return a logger with file and console handlers.

    Args:
        logger_name: Name of the logger
        log_file: Optional specific log filename (default: medical_pipeline.log)
        level: Logging level (default: LOG_LEVEL env var, else INFO)
        log_dir: Directory for log files (default: LOG_DIR env var, else logs).
            An empty string disables the file handler.

    Returns:
        Configured logger instance
    """
    if log_dir is None:
        log_dir = os.environ.get("LOG_DIR", DEFAULT_LOG_DIR)

    # Every pipeline module shares one log file unless told otherwise
    if log_file is None:
        log_file = "medical_pipeline.log"

    logger = logging.getLogger(logger_name)
    logger.setLevel(_resolve_level(level))

    # Clear existing handlers to avoid duplicates if logger already exists
    if logger.handlers:
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, log_file)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.debug(f"Log file is being saved to: {os.path.abspath(log_path)}")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger
