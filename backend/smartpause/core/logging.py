import logging
import os

from smartpause.core.config import LOG_DIR, ensure_dirs

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger("smartpause-backend")


def setup_file_logging() -> None:
    ensure_dirs()
    log_path = os.path.join(LOG_DIR, "backend.log")
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
