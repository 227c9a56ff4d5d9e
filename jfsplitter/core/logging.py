from __future__ import annotations

import logging

from jfsplitter.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; later calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, resolved, logging.INFO))
    # httpx logs every request at INFO; keep it quiet unless debugging the proxy itself.
    logging.getLogger("httpx").setLevel(logging.DEBUG if resolved == "DEBUG" else logging.WARNING)
