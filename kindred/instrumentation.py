"""
Instrumentation module for Kindred.

Millisecond-precision event logging for turn ordering verification:
- Which request id reached which checkpoint
- Stage timing with soft thresholds
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _task_name() -> str:
    try:
        task = asyncio.current_task()
    except RuntimeError:
        task = None
    return task.get_name() if task is not None else "-"


def log_event(event: str, stage: str = "", request_id: Optional[int] = None):
    """
    Log event with monotonic timeline metadata.

    Format: [EVT] t=<ms> id=<request_id> stage=<stage> event=<event> task=<task>
    """
    ts = int(time.monotonic() * 1000)
    rid = "" if request_id is None else request_id
    logger.info(f"[EVT] t={ts} id={rid} stage={stage} event={event} task={_task_name()}")


@dataclass
class StageResult:
    stage: str
    elapsed_seconds: float
    threshold_seconds: Optional[float]
    triggered: bool


class StageTimer:
    """Context manager that measures elapsed time for a turn stage."""

    def __init__(self, stage: str, threshold_seconds: Optional[float] = None, request_id: Optional[int] = None):
        self.stage = stage
        self.threshold_seconds = threshold_seconds
        self.request_id = request_id
        self._start = 0.0
        self.elapsed_seconds = 0.0
        self.triggered = False

    def __enter__(self):
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_seconds = time.monotonic() - self._start
        if self.threshold_seconds is not None and self.elapsed_seconds > self.threshold_seconds:
            self.triggered = True
            logger.warning(
                "[TIMER] %s exceeded threshold: %.2fs > %.2fs (id=%s)",
                self.stage,
                self.elapsed_seconds,
                self.threshold_seconds,
                self.request_id,
            )
        else:
            logger.debug("[TIMER] %s took %.0fms", self.stage, self.elapsed_seconds * 1000)
        return False

    def result(self) -> StageResult:
        return StageResult(
            stage=self.stage,
            elapsed_seconds=self.elapsed_seconds,
            threshold_seconds=self.threshold_seconds,
            triggered=self.triggered,
        )
