"""Weighted progress reporting."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Emits ``100 * weight / total`` per resolved step.

    The total is the plan's precomputed weight, so the emitted increments
    add up to 100 once every planned step has reported.
    """

    def __init__(self, total_weight: int, callback: Optional[ProgressCallback] = None) -> None:
        if total_weight <= 0:
            raise ValueError("A plan must contain at least one step")
        self.total_weight = total_weight
        self.callback = callback
        self.reported_weight = 0

    @property
    def percent(self) -> float:
        return 100.0 * self.reported_weight / self.total_weight

    def report(self, weight: int, message: str) -> ProgressEvent:
        if self.reported_weight + weight > self.total_weight:
            logger.warning("Progress overflow: %s exceeds the planned total", message)
        self.reported_weight += weight
        event = ProgressEvent(increment_percent=100.0 * weight / self.total_weight, message=message)
        if self.callback:
            self.callback(event)
        return event
