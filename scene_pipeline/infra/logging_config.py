"""
Logging configuration module.

One package logger ("scene_pipeline") with a console handler and a daily
rotating file handler. Module loggers created with logging.getLogger(__name__)
are its children and write through its handlers. Level and directory come
from Settings and data_paths unless overridden.

HTTP client loggers are held at WARNING (unless running at DEBUG) since the
synchronizer and retry queue would otherwise log every remote request.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from .config import Settings
from .data_paths import get_logs_dir

LOGGER_NAME = "scene_pipeline"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ("httpx", "httpcore")

# Process start time is captured once and reused for all daily logs
_PROCESS_START_TIME: Optional[str] = None


class DailyRotatingFileHandler(logging.FileHandler):
    """
    Daily rotating file handler.

    Creates one log file per calendar day with format:
    <log_dir>/scene_pipeline_YYYYMMDD_<START_HHMMSS>.log

    START_HHMMSS is fixed at process start, only YYYYMMDD changes.
    """

    def __init__(
        self,
        log_dir: Union[str, Path, None] = None,
        encoding: str = "utf-8",
        now: Callable[[], datetime] = datetime.now,
    ):
        global _PROCESS_START_TIME

        self.log_dir = Path(log_dir) if log_dir is not None else get_logs_dir()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._now = now

        if _PROCESS_START_TIME is None:
            _PROCESS_START_TIME = self._now().strftime("%H%M%S")
        self._start_hhmmss = _PROCESS_START_TIME

        self._current_date = self._date_key()
        super().__init__(self._path_for(self._current_date), mode='a', encoding=encoding)

    def _date_key(self) -> str:
        return self._now().strftime("%Y%m%d")

    def _path_for(self, date_key: str) -> str:
        return str(self.log_dir / f"{LOGGER_NAME}_{date_key}_{self._start_hhmmss}.log")

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a record, switching to a new file when the date changed."""
        date_key = self._date_key()
        if date_key != self._current_date:
            self.close()
            self.baseFilename = self._path_for(date_key)
            self._current_date = date_key
            self.stream = self._open()

        super().emit(record)


def resolve_level(log_level: Optional[str], settings: Optional[Settings] = None) -> int:
    """Numeric level from an explicit name, else Settings.log_level; unknown names mean INFO."""
    name = log_level or (settings or Settings.from_env()).log_level
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    settings: Optional[Settings] = None,
    log_level: Optional[str] = None,
    log_dir: Union[str, Path, None] = None,
) -> logging.Logger:
    """
    Configure the package logger and return it.

    Safe to call more than once; handlers are replaced, not added.

    Args:
        settings: Runtime settings; read from the environment when omitted
        log_level: Overrides settings.log_level (e.g. from --log-level)
        log_dir: Overrides the data_paths logs directory

    Returns:
        logging.Logger: Configured package logger
    """
    numeric_level = resolve_level(log_level, settings)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    file_handler = DailyRotatingFileHandler(log_dir=log_dir)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    client_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(client_level)

    logger.info(
        f"[Logging] Started at {logging.getLevelName(numeric_level)}, "
        f"file: {file_handler.baseFilename}"
    )
    return logger
