import sys
import logging
import pathlib
from typing import Optional
from logging.handlers import RotatingFileHandler
from vulnera_launcher import settings


class MainFormatter(logging.Formatter):
    """A formatter for launcher records that passes adapter diagnostics through raw."""

    def format(self, record):
        if record.name.startswith('proc.'):
            return record.getMessage()

        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


def _writes_to_stdout(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) in (sys.stdout, sys.__stdout__)


def setup_logging(console_level: int = logging.INFO, log_file: Optional[pathlib.Path] = settings.LOG_FILE_PATH) -> None:
    """
    Configures the root logger for the launcher.
    Clears previously configured handlers, then logs to stderr and to a rotating file.

    :param console_level: The logging level for stderr output (e.g., logging.INFO).
    :param log_file: Path of the rotating log file, or None to skip file logging.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- File Handler ---
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=settings.LOG_FILE_MAX_BYTES,
                backupCount=settings.LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(MainFormatter())
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Failed to initialize file logging at {log_file}: {e}. File logging is disabled.")

    # Third-party libraries sometimes attach their own stdout handlers.
    for name in list(logging.root.manager.loggerDict):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            if _writes_to_stdout(handler):
                logger.removeHandler(handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)
