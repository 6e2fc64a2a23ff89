"""
Fact Engine - Logging Setup

Single stream handler on the root logger; modules log through
logging.getLogger(__name__).
"""
import logging

from .config import LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install the process-wide handler once; later calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    if not any(getattr(h, "_factengine", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._factengine = True
        root.addHandler(handler)
