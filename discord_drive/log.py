import logging
from typing import Optional

LOGGER_NAME = "DiscordDrive"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(level: str = "INFO", logfile: Optional[str] = "discord_drive.log"):
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)
        if logfile:
            try:
                file_handler = logging.FileHandler(logfile)
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except OSError:
                logger.warning(f"Could not open log file {logfile}, logging to console only")
    set_level(level)
    return logger


def set_level(level: str):
    level = (level or "INFO").upper()
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
