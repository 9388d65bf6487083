import sys
from loguru import logger
from pathlib import Path
from typing import Optional, Union

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[session]}</magenta> | <cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[session]} | {name}:{function}:{line} - {message}"

_configured = False


def setup_logger(log_level: str = "INFO", log_file: Optional[Union[str, Path]] = None):
    """Install the stderr sink and, when given, a rotating file sink.

    Repeated calls without a log file keep the existing sinks, so the CLI
    can be invoked several times in one process.
    """
    global _configured

    if _configured and log_file is None:
        return logger

    logger.remove()
    logger.configure(extra={"session": "-"})
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=log_level.upper(), colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, format=FILE_FORMAT, level="DEBUG", rotation="10 MB", retention="7 days")

    _configured = True
    return logger


def session_logger(session_id: str):
    """Logger whose records carry the session id in both sinks."""
    return logger.bind(session=session_id[:8])
