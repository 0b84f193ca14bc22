"""
Service bindings looked up at the point of use.

The wallet (payment executor) or telemetry sink may be bound or swapped while
jobs are in flight. Components keep the registry, never the handle: each
operation calls payment_executor() / telemetry() again.
"""

import threading
from typing import Optional

from dvmpay.payments import PaymentExecutor
from dvmpay.telemetry import LoggingTelemetry, TelemetrySink


class ServiceRegistry:
    def __init__(
        self,
        payment_executor: Optional[PaymentExecutor] = None,
        telemetry: Optional[TelemetrySink] = None,
    ):
        self._lock = threading.Lock()
        self._payment_executor = payment_executor
        self._telemetry = telemetry if telemetry is not None else LoggingTelemetry()

    def bind_payment_executor(self, executor: Optional[PaymentExecutor]) -> None:
        with self._lock:
            self._payment_executor = executor

    def bind_telemetry(self, sink: TelemetrySink) -> None:
        with self._lock:
            self._telemetry = sink

    def payment_executor(self) -> Optional[PaymentExecutor]:
        """Current executor, or None if no wallet is bound yet."""
        with self._lock:
            return self._payment_executor

    def telemetry(self) -> TelemetrySink:
        with self._lock:
            return self._telemetry
