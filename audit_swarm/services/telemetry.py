"""
Metrics sink interface.

Pipeline stages report counters and observations through an injected sink
instead of module-level accumulators. The default sink writes to the log;
tests swap in a recording sink.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

logger = logging.getLogger("telemetry")


class MetricsSink(ABC):
    @abstractmethod
    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None) -> None:
        pass

    @abstractmethod
    def observe(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        pass


class NullMetricsSink(MetricsSink):
    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None) -> None:
        return None

    def observe(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        return None


class LoggingMetricsSink(MetricsSink):
    """Emits every metric as a DEBUG log line."""

    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None) -> None:
        logger.debug(f"[metric] {name} +{value} {tags or {}}")

    def observe(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        logger.debug(f"[metric] {name}={value:.2f} {tags or {}}")
