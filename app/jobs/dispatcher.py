"""Pipeline dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

Work = Callable[[], Awaitable[None]]


class PipelineDispatcher(ABC):
    """Runs background pipeline work detached from the request that started it."""

    @abstractmethod
    async def submit(self, job_id: str, work: Work) -> None:
        """Schedule ``work`` for ``job_id``. Raises DispatchRejected when full."""
        ...

    @abstractmethod
    def has_capacity(self) -> bool:
        """Whether a submit right now would be accepted."""
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher; work already running is cancelled."""
        ...
