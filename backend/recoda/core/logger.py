import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def _configure_root():
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("recoda")
    root.addHandler(handler)
    root.setLevel(os.getenv("RECODA_LOG_LEVEL", "INFO").upper())
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``recoda`` hierarchy."""
    _configure_root()
    if not name.startswith("recoda"):
        name = f"recoda.{name}"
    return logging.getLogger(name)
