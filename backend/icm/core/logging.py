from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach one stream handler to the `icm` logger tree.
    Safe to call more than once (tests build several apps per session).
    """
    root = logging.getLogger("icm")
    root.setLevel((level or "INFO").upper())
    if not any(getattr(h, "_icm_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._icm_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return root
