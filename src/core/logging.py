"""Process-wide logging setup shared by the API, the CLI and the scheduler."""

import logging

from src.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    global _configured
    resolved = (level or settings.log_level or "INFO").upper()
    if not _configured:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
        _configured = True
    logging.getLogger().setLevel(resolved)
    # httpx logs every gateway request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
