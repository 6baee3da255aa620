import sys
import logging
from logging.handlers import RotatingFileHandler

from ollama_manager.local.config import effective_settings as config


class SubprocessLogFilter(logging.Filter):
    """
    This filter identifies logs coming from the subprocess logger
    and keeps them out of handlers that only want the manager's own records.
    """
    def filter(self, record):
        # The 'proc.' prefix is used by the service log tailer in background_tasks.py
        return not record.name.startswith('proc.')


class MainFormatter(logging.Formatter):
    """A custom formatter to handle regular logs and raw subprocess logs."""

    def format(self, record):
        # If the log is from a subprocess, just return the raw message.
        if record.name.startswith('proc.'):
            return record.getMessage()

        # Otherwise, use the default formatting.
        # Temporarily change the format string for the superclass call.
        original_format = self._style._fmt
        self._style._fmt = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
        formatted_message = super().format(record)
        self._style._fmt = original_format
        return formatted_message


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the application.
    This sets up handlers for the console and optionally a rotating log file,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- File Handler (conditional) ---
    if config.LOG_TO_FILE:
        try:
            config.LOG_FILE_PATH.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                config.LOG_FILE_PATH,
                maxBytes=config.LOG_FILE_MAX_BYTES,
                backupCount=config.LOG_FILE_BACKUP_COUNT,
                encoding='utf-8',
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter('%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s')
            )
            # The service writes its own output file, so its lines are not duplicated here.
            file_handler.addFilter(SubprocessLogFilter())
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Failed to initialize file logging handler: {e}. Logging to file will be disabled.")


def set_console_level(level: int) -> bool:
    """
    Changes the level of the console handler installed by setup_logging.

    :return: True if a console handler was found.
    """
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
            return True
    return False
