# src/devhost/observers/logger.py

from __future__ import annotations

import logging

from .events import BaseEvent

# already on every log line, or repeated on every event
_SKIP_FIELDS = ("ts", "run_id", "variant")


class LoggerObserver:
    """Mirrors events into the run's log file at DEBUG."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _SKIP_FIELDS)
        self.logger.debug("[EVENT] %s: %s", type(event).__name__, fields)
