"""
Telemetry sink: fire-and-forget event records.

record() must never block or fail the caller; record_safely() enforces that
for any sink implementation.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

CATEGORY = "nip90_consumer"


class TelemetrySink(Protocol):
    def record(
        self,
        category: str,
        action: str,
        label: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> None:
        ...


@dataclass(frozen=True)
class TelemetryRecord:
    category: str
    action: str
    label: Optional[str] = None
    value: Optional[Any] = None
    timestamp: float = field(default_factory=time.time)


class LoggingTelemetry:
    """Writes records to the dvmpay.telemetry logger. Can be switched off at runtime."""

    def __init__(self, enabled: bool = True, level: int = logging.INFO):
        self._enabled = enabled
        self._level = level

    def is_enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info(f"Telemetry explicitly set to: {enabled}")

    def record(
        self,
        category: str,
        action: str,
        label: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> None:
        if not self._enabled:
            return
        logger.log(self._level, "[Telemetry] %s/%s label=%s value=%s", category, action, label, value)


class NullTelemetry:
    def record(self, category, action, label=None, value=None) -> None:
        pass


def record_safely(
    sink: Optional[TelemetrySink],
    action: str,
    label: Optional[str] = None,
    value: Optional[Any] = None,
    category: str = CATEGORY,
) -> None:
    """Record via sink; sink failures are logged and dropped."""
    if sink is None:
        return
    try:
        sink.record(category, action, label, value)
    except Exception as e:
        logger.debug(f"Telemetry sink failed on {category}/{action}: {e}")
