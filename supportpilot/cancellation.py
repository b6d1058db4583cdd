"""
Cooperative cancellation for long-running ingestion work.

A separate request flips a durable flag on the document row; the running
pipeline only observes it at explicit checkpoints through a CancellationToken.
"""
from typing import Awaitable, Callable


class IngestionCancelledError(Exception):
    """Raised when a user cancelled an in-flight ingestion."""

    def __init__(self, message: str = "Ingestion cancelled by user"):
        super().__init__(message)


class CancellationToken:
    """
    Checkpoint handle backed by the persisted cancellation flag.

    `check` reads the durable flag. Once a check reports cancellation the token
    latches, so later checkpoints never re-read the row.
    """

    def __init__(self, check: Callable[[], Awaitable[bool]]):
        self._check = check
        self._cancelled = False

    async def is_cancelled(self) -> bool:
        if not self._cancelled and await self._check():
            self._cancelled = True
        return self._cancelled

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancelled():
            raise IngestionCancelledError()
