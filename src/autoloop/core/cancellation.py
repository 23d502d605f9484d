"""Cooperative cancellation for agent runs."""

import asyncio
import threading


class AgentAborted(RuntimeError):
    """Raised when a run is aborted through its :class:`CancellationToken`."""

    def __init__(self, message: str = "Run was aborted", partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


class CancellationToken:
    """
    Abort signal shared between a running loop and whoever may stop it.

    ``cancel()`` may be called from any thread or coroutine; the loop and the turn executor check
    the token at safe points (after every stream delta, before every step and tool call).
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request the abort."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, poll_interval: float = 0.1) -> None:
        """Return once the abort is requested.  Polls, since ``cancel()`` may come from any thread."""
        while not self._event.is_set():
            await asyncio.sleep(poll_interval)

    def raise_if_cancelled(self, partial_text: str = "") -> None:
        """Raise :class:`AgentAborted` carrying *partial_text* if an abort was requested."""
        if self._event.is_set():
            raise AgentAborted(partial_text=partial_text)
