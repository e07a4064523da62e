"""In-memory operation store with idle-time expiration."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog
from cachetools import TTLCache

from autocv_api.cancellation import CancellationScope
from autocv_api.models import OperationInputs, RefinementRequest
from autocv_api.stream_transport import SSEChannel

logger = structlog.get_logger()


class LifecycleState(str, Enum):
    """Where an operation is in its analysis/refinement loop."""

    CREATED = "created"
    STREAMING = "streaming"
    COMPLETED = "completed"
    REFINE_PENDING = "refine_pending"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


@dataclass
class Operation:
    """One resume analysis job spanning one or more generation passes."""

    id: str
    inputs: OperationInputs
    scope: CancellationScope = field(default_factory=CancellationScope)
    state: LifecycleState = LifecycleState.CREATED
    refinement: RefinementRequest | None = None
    channel: SSEChannel | None = None
    pass_task: asyncio.Task | None = field(default=None, repr=False)
    last_result: dict[str, Any] | None = field(default=None, repr=False)
    passes_completed: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stream_attached(self) -> bool:
        """Whether a live output channel is currently bound."""
        return self.channel is not None and not self.channel.closed

    def rotate_scope(self, reason: str) -> CancellationScope:
        """Signal the current scope and install a fresh one."""
        self.scope.signal(reason)
        self.scope = CancellationScope()
        return self.scope


ExpiryCallback = Callable[[Operation, str], None]


class _OperationCache(TTLCache):
    """TTLCache that reports operations dropped by expiry or size eviction."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float], on_drop: ExpiryCallback):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_drop = on_drop

    def expire(self, time: float | None = None):
        expired = super().expire(time)
        for _, operation in expired:
            self._on_drop(operation, "expired")
        return expired

    def popitem(self):
        key, operation = super().popitem()
        self._on_drop(operation, "evicted")
        return key, operation


class OperationStore:
    """In-memory operation registry with idle expiration.

    Not thread-safe: the store is owned by one OperationManager running on a
    single event loop, so there is never more than one writer at a time.
    Every successful ``get`` refreshes the entry's time-to-live.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_operations: int,
        on_drop: ExpiryCallback | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        """Initialize the operation store.

        Args:
            ttl_seconds: Idle seconds after which an operation expires.
            max_operations: Maximum number of operations held at once.
            on_drop: Called with (operation, reason) when an operation leaves
                the store by expiry or size eviction rather than ``delete``.
            timer: Clock used for expiry (injectable for tests).
        """
        self._ttl = ttl_seconds
        self._max_operations = max_operations
        self.on_drop = on_drop
        self._cache: _OperationCache = _OperationCache(
            maxsize=max_operations,
            ttl=ttl_seconds,
            timer=timer,
            on_drop=self._dropped,
        )

    def _dropped(self, operation: Operation, reason: str) -> None:
        logger.info("Operation dropped from store", operation_id=operation.id, reason=reason)
        if self.on_drop is not None:
            self.on_drop(operation, reason)

    def create(self, inputs: OperationInputs) -> str:
        """Store a new operation in the CREATED state and return its id."""
        operation = Operation(id=str(uuid4()), inputs=inputs)
        self._cache[operation.id] = operation
        return operation.id

    def get(self, operation_id: str) -> Operation | None:
        """Get an operation by id, returning None if absent or expired."""
        operation = self._cache.get(operation_id)
        if operation is None:
            return None
        # Re-inserting restarts the entry's time-to-live
        operation.last_activity = datetime.now(timezone.utc)
        self._cache[operation_id] = operation
        return operation

    def delete(self, operation_id: str) -> Operation | None:
        """Remove an operation, returning it if it was present."""
        return self._cache.pop(operation_id, None)

    def values(self) -> list[Operation]:
        """Snapshot of the live operations."""
        return list(self._cache.values())

    def count(self) -> int:
        """Get the number of live operations."""
        return len(self._cache)

    def clear(self, reason: str = "evicted") -> int:
        """Remove all operations, reporting each one as dropped.

        Returns:
            Number of operations removed.
        """
        operations = self.values()
        for operation in operations:
            self._cache.pop(operation.id, None)
            self._dropped(operation, reason)
        return len(operations)

    def cleanup_expired(self) -> int:
        """Force expiry of idle operations.

        Returns:
            Number of operations that expired.
        """
        return len(self._cache.expire())

    def get_stats(self) -> dict:
        """Get statistics about the operation store."""
        return {
            "active_operations": len(self._cache),
            "max_operations": self._max_operations,
            "ttl_seconds": self._ttl,
        }
