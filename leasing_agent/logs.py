from __future__ import annotations

import json
import logging
import sys
from typing import Any


LOGGER_NAME = "leasing_agent"

_structured = True


def configure_logging(*, structured: bool = True, level: int = logging.INFO) -> None:
    global _structured
    _structured = bool(structured)
    logging.basicConfig(level=level, stream=sys.stderr, format="[%(asctime)s] %(levelname)s %(message)s")


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{component}")


def _render(component: str, event: str, payload: dict[str, Any]) -> str:
    if not _structured:
        details = " ".join(f"{k}={payload[k]}" for k in sorted(payload))
        return f"{component} {event} {details}".rstrip()
    base: dict[str, Any] = {"component": component, "event": event}
    base.update(payload)
    return json.dumps(base, sort_keys=True, separators=(",", ":"), default=str)


def log_event(component: str, event: str, *, level: int = logging.INFO, **payload: Any) -> None:
    logger = get_logger(component)
    if not logger.isEnabledFor(level):
        return
    logger.log(level, _render(component, event, payload))
