import logging

from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send every ``ecom_core`` logger through one JSON stream handler."""
    logger = logging.getLogger("ecom_core")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level.upper())
