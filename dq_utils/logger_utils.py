import logging
import sys
from pythonjsonlogger import jsonlogger

# Called once per process; handlers are only attached the first time.


def get_logger(name: str, log_level: str = "INFO"):
    logger = logging.getLogger(name)
    logger.setLevel(log_level)
    logger.propagate = False

    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(module)s %(funcName)s %(message)s'
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    return logger


def set_log_level(log_level: str) -> None:
    """Apply the configured level to the shared pipeline logger."""
    logger.setLevel(log_level)


# Default logger instance
logger = get_logger("docquiz")
