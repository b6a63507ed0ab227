# logging_config.py
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path(os.environ.get("IMU_PREINT_LOG_DIR", "logs"))

LOG_FILE = LOG_DIR / "preintegration.log"


def get_logger(name: str, console_level: int = logging.INFO) -> logging.Logger:
    """
    Return a logger with the given name.
    Logs INFO (or console_level) to console and DEBUG to a rotating file.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:  # avoid duplicate handlers on reload
        logger.setLevel(logging.DEBUG)
        LOG_DIR.mkdir(parents=True, exist_ok=True)

        # --- File handler ---
        fh = RotatingFileHandler(LOG_FILE, maxBytes=5_000_000, backupCount=3)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
        ))

        # --- Console handler ---
        ch = logging.StreamHandler()
        ch.setLevel(console_level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))

        logger.addHandler(fh)
        logger.addHandler(ch)

    return logger
