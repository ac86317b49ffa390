"""Transform invoker interface."""

from abc import ABC, abstractmethod
from typing import Optional


class TransformInvoker(ABC):
    """Turns image bytes plus a prompt into new image bytes.

    Implementations raise ``TransformFailed`` on any failure and never retry;
    retry policy belongs to whoever creates jobs.
    """

    @abstractmethod
    async def transform(self, image: bytes, prompt: str, mask: Optional[bytes] = None) -> bytes:
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        return None
