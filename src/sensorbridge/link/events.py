from __future__ import annotations

import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

LogListener = Callable[[str, str], None]

_LEVEL_CATEGORIES = {
    logging.DEBUG: "info",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "err",
    logging.CRITICAL: "err",
}


class Signal:
    """Minimal observer list; listeners are called in subscription order."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._listeners: List[Callable[..., Any]] = []

    def connect(self, listener: Callable[..., Any]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def disconnect(self, listener: Callable[..., Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %s failed", self.name or "signal")

    def __len__(self) -> int:
        return len(self._listeners)


class LogRelay(logging.Handler):
    """
    Forward log records to UI listeners as (category, message) pairs.

    Records tagged with ``extra={"category": ...}`` keep their tag (tx, rx);
    the rest are categorised by level.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.emitted = Signal("log")

    def emit(self, record: logging.LogRecord) -> None:
        category = getattr(record, "category", None) or _LEVEL_CATEGORIES.get(
            record.levelno, "info"
        )
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        self.emitted.emit(category, message)

    def attach(self, name: str = "sensorbridge") -> "LogRelay":
        target = logging.getLogger(name)
        if target.getEffectiveLevel() > self.level:
            target.setLevel(self.level)
        target.addHandler(self)
        return self

    def detach(self, name: str = "sensorbridge") -> None:
        logging.getLogger(name).removeHandler(self)
