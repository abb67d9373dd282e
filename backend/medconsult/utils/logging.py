"""
Logging setup — console plus LOG_DIR/server.log.
"""
import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _to_level(name: str, default: int) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default


def configure_logging(settings) -> logging.Logger:
    """Install console and file handlers on the root logger. Safe to call twice."""
    level = _to_level(settings.LOG_LEVEL, logging.INFO)
    os.makedirs(settings.LOG_DIR, exist_ok=True)

    handlers = [
        logging.StreamHandler(),
        logging.FileHandler(os.path.join(settings.LOG_DIR, "server.log"), encoding="utf-8"),
    ]
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Access lines come from our own middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DEBUG else logging.WARNING)

    return logging.getLogger("medconsult")
