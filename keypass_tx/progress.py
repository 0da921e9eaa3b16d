"""Submission progress reporting."""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ProgressStage(enum.Enum):
    """Where a submission is. Values are percentages."""

    preparing = 10
    estimating = 25
    dispatching = 50
    confirming = 75
    done = 100
    failed = 101

    @property
    def percent(self) -> int:
        return min(self.value, 100)


@dataclass(frozen=True, slots=True)
class Progress:
    stage: ProgressStage

    message: str

    tx_hash: Optional[str] = None

    @property
    def percent(self) -> int:
        return self.stage.percent


#: Caller supplied progress callback
ProgressCallback = Callable[[Progress], None]


class ProgressReporter:
    """Emit progress to a caller callback.

    Never moves backwards, so retries going through the early stages
    again do not reset a progress bar. A broken callback is logged and ignored.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.last: Optional[ProgressStage] = None

    def report(self, stage: ProgressStage, message: str, tx_hash: Optional[str] = None) -> bool:
        """Emit a stage.

        :return:
            True if the callback was called
        """
        if self.last is not None and stage.value <= self.last.value:
            return False

        self.last = stage

        if self.callback is None:
            return False

        try:
            self.callback(Progress(stage=stage, message=message, tx_hash=tx_hash))
        except Exception as e:
            logger.warning("Progress callback %s failed at %s: %s", self.callback, stage.name, e)
        return True
