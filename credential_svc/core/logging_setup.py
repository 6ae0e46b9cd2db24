from __future__ import annotations
import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    # uvicorn --reload re-runs startup; keep a single handler
    if any(getattr(h, "_credential_svc", False) for h in root.handlers):
        return
    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter(_FORMAT))
    ch._credential_svc = True  # type: ignore[attr-defined]
    root.addHandler(ch)
