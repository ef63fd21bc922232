"""Cooperative cancellation shared between the HTTP layer and provider calls."""

import asyncio

import structlog

_log = structlog.get_logger(__name__)


class AbortSignal:
    """A set-once cancellation flag.

    The HTTP handler and the provider task both hold a reference; whichever
    side detects cancellation first (client disconnect, forced shutdown)
    calls :meth:`abort`.  Readers either poll :meth:`aborted` between chunks
    or await :meth:`wait`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def abort(self) -> None:
        self._event.set()

    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"AbortSignal(aborted={self.aborted()})"


class AbortRegistry:
    """Tracks the abort signals of in-flight streams so shutdown can reach them."""

    def __init__(self) -> None:
        self._signals: set[AbortSignal] = set()

    def create(self) -> AbortSignal:
        signal = AbortSignal()
        self._signals.add(signal)
        return signal

    def discard(self, signal: AbortSignal) -> None:
        self._signals.discard(signal)

    def abort_all(self) -> int:
        """Abort every tracked signal and return how many were live."""
        live = [s for s in self._signals if not s.aborted()]
        for signal in live:
            signal.abort()
        if live:
            _log.info("streams_aborted", count=len(live))
        return len(live)

    def __len__(self) -> int:
        return len(self._signals)
