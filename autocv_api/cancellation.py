"""Per-attempt cancellation scopes for generation passes."""

import asyncio
import secrets


class CancellationScope:
    """One-shot cancellation handle for a single generation attempt.

    A scope is created for every attempt and never reused. Work that captured
    a scope compares it (by identity) against the operation's current scope
    before each side effect to detect that it has gone stale.
    """

    def __init__(self) -> None:
        self.tag = secrets.token_hex(4)
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_signaled(self) -> bool:
        """Whether the attempt owning this scope has been told to stop."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Why the scope was signalled (first reason wins)."""
        return self._reason

    def signal(self, reason: str = "cancelled") -> None:
        """Signal the scope. Idempotent."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Block until the scope is signalled."""
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"signaled:{self._reason}" if self.is_signaled else "live"
        return f"<CancellationScope {self.tag} {state}>"
