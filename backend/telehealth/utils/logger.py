import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from telehealth.config import get_settings

settings = get_settings()

# Session lifecycle loggers live under this child name (session, session.sweeper, ...)
SESSION_LOGGER = "session"

logs_dir = Path(settings.LOG_DIR)
logs_dir.mkdir(parents=True, exist_ok=True)

level = logging.DEBUG if settings.APP_DEBUG else logging.INFO

console_format = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
file_format = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def _rotating(filename: str, handler_level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        logs_dir / filename,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",  # Arabic and emoji messages
    )
    handler.setLevel(handler_level)
    handler.setFormatter(file_format)
    return handler


logger = logging.getLogger(settings.APP_NAME)
logger.setLevel(level)

# Prevent duplicate logs when the module is re-imported (reload, tests)
if logger.handlers:
    logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(level)
console_handler.setFormatter(console_format)
logger.addHandler(console_handler)
logger.addHandler(_rotating("app.log", logging.INFO))
logger.addHandler(_rotating("errors.log", logging.ERROR))

# Start/end/timeout trail of every appointment session, kept apart from request noise.
# Records still propagate to app.log and the console.
session_logger = logger.getChild(SESSION_LOGGER)
if session_logger.handlers:
    session_logger.handlers.clear()
session_logger.addHandler(_rotating("sessions.log", logging.INFO))


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance. If name is provided, returns a child logger."""
    if name:
        return logger.getChild(name)
    return logger
