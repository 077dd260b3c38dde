from __future__ import annotations

import asyncio
from enum import StrEnum


class ShutdownReason(StrEnum):
    PEER = "peer"
    INTERRUPT = "interrupt"
    ERROR = "error"


class ShutdownSignal:
    """Process-wide stop flag shared by every instance of a run.

    Sleeps and launch delays return as soon as it is set; in-flight backend calls
    are left to finish. The first reason recorded wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: ShutdownReason | None = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def trigger(self, reason: ShutdownReason) -> bool:
        if self._event.is_set():
            # An interrupt still overrides a peer stop so no new spiral starts.
            if self.reason is ShutdownReason.PEER and reason is not ShutdownReason.PEER:
                self.reason = reason
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns ``True`` when cut short by shutdown."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def rearm(self) -> None:
        """Clear a peer stop so another worker pass can run; interrupts stay set."""
        if self.reason is ShutdownReason.PEER:
            self.reason = None
            self._event.clear()
