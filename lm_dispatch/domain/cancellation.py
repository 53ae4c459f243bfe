import asyncio
from datetime import datetime
from typing import Optional


class CancellationToken:
    """Cooperative cancellation signal owned by a single conversation.

    Signalling never interrupts running work; long-running operations are
    expected to check `is_cancelled` at their own suspension points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.cancelled_at: Optional[datetime] = None

    def cancel(self):
        """Signal cancellation. Repeated calls are no-ops."""
        if not self._event.is_set():
            self.cancelled_at = datetime.utcnow()
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        """Block until the token is signalled"""
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
