"""Configuration du logging partagée par l'engine et l'API."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict

_STD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Une ligne JSON par record (extras inclus)."""

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "level": record.levelname,
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "name": record.name,
            "message": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k not in _STD_ATTRS:
                out[k] = v
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, default=str)


def setup_logging(level: str | int = "INFO", json_format: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(level if isinstance(level, int) else level.upper())
    # évite les doublons en cas de reload (uvicorn --reload, tests)
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s"))
    root.addHandler(handler)
    # httpx logue chaque requête en INFO : trop bavard avec le polling
    logging.getLogger("httpx").setLevel(logging.WARNING)
