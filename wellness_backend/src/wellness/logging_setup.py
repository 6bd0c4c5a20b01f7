from __future__ import annotations

import logging
import sys

_CONFIGURED = False


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep our own logs; only let third-party loggers through at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("src.wellness") or record.name.startswith("uvicorn"):
            return True
        return record.levelno >= logging.WARNING


# PUBLIC_INTERFACE
def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger with a single stderr handler.

    Safe to call more than once; only the first call installs the handler.
    """
    global _CONFIGURED
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)
    logging.captureWarnings(True)
    _CONFIGURED = True
