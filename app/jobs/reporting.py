"""Single sink for pipeline failures."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class ErrorReporter(ABC):
    """Receives every pipeline failure. Subclass to forward to a monitoring service."""

    @abstractmethod
    def report(self, job_id: str, stage: str, error: BaseException) -> None:
        ...


class LoggingErrorReporter(ErrorReporter):
    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def report(self, job_id: str, stage: str, error: BaseException) -> None:
        self._log.error(
            "Job %s failed at %s: %s",
            job_id,
            stage,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )
