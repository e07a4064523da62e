"""Lifecycle orchestration for streamed, cancellable and refinable analyses.

One ``OperationManager`` owns the operation store. It creates operations,
binds a client's SSE channel to an operation and runs the generation pass
for it, primes refinement passes, and cancels operations outright.

Concurrency model: everything runs on one event loop. Methods that mutate
state without awaiting (``attach_stream``, ``refine``, ``cancel``) are
atomic with respect to each other. A generation pass suspends on every
fragment, so before each side effect it re-fetches its operation and checks
that it still owns both the bound channel and the current cancellation
scope; a refine, a cancel or a disconnect in between makes it stop quietly.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import structlog

from autocv_api.cancellation import CancellationScope
from autocv_api.config import get_settings
from autocv_api.generator import AnalysisGenerator, GenerationError
from autocv_api.models import (
    CompleteEvent,
    ErrorEvent,
    FragmentEvent,
    OperationInputs,
    RefinementRequest,
)
from autocv_api.observability import (
    generation_fragments_total,
    log_generation_end,
    log_generation_start,
    operations_active,
    operations_total,
    persistence_failures_total,
)
from autocv_api.operation_store import LifecycleState, Operation, OperationStore
from autocv_api.result_persister import ResultPersister
from autocv_api.stream_transport import SSEChannel
from autocv_api.structured_output import StructuredPayloadError, extract_structured_payload

logger = structlog.get_logger()


class InvalidInputError(Exception):
    """Raised when a request is missing required content."""

    pass


class OperationNotFoundError(Exception):
    """Raised when an operation id is unknown, cancelled or expired."""

    def __init__(self, operation_id: str):
        super().__init__("Analysis session not found or not initiated.")
        self.operation_id = operation_id


class StreamConflictError(Exception):
    """Raised when a stream is already attached to the operation."""

    def __init__(self, operation_id: str):
        super().__init__("Streaming already in progress for this operation.")
        self.operation_id = operation_id


@dataclass
class CancelResult:
    """Outcome of a cancel call. Cancellation always succeeds."""

    found: bool
    message: str


@dataclass
class RefineResult:
    """Outcome of a refine call."""

    message: str
    interrupted_pass: bool


class OperationManager:
    """Creates, streams, refines and cancels analysis operations."""

    def __init__(
        self,
        generator: AnalysisGenerator,
        persister: ResultPersister | None = None,
        store: OperationStore | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        """Initialize the manager.

        Args:
            generator: Streams analysis text for each pass.
            persister: Optional best-effort sink for initiated/final records.
            store: Operation store to own. Defaults to one sized from config.
            timer: Clock for the default store's expiry (injectable for tests).
        """
        settings = get_settings()
        self._generator = generator
        self._persister = persister
        self._store = store or OperationStore(
            ttl_seconds=settings.operation_ttl,
            max_operations=settings.max_operations,
            timer=timer,
        )
        self._store.on_drop = self._release_dropped
        self._tasks: set[asyncio.Task] = set()
        self._writes: dict[str, asyncio.Task] = {}
        self._reaper: asyncio.Task | None = None

    # =========================================================================
    # Public operations
    # =========================================================================

    async def initiate(self, inputs: OperationInputs) -> str:
        """Create an operation and return its id. Does not start generation."""
        if not inputs.resume_text.strip():
            raise InvalidInputError("Resume content is required.")

        operation_id = self._store.create(inputs)
        operations_total.labels(outcome="initiated").inc()
        operations_active.set(self._store.count())

        logger.info(
            "Analysis operation initiated",
            operation_id=operation_id,
            file_name=inputs.client_file_name,
            resume_chars=len(inputs.resume_text),
            job_posting_chars=len(inputs.job_posting_text),
        )

        if self._persister is not None:
            self._persist(operation_id, "initiated", lambda: self._persister.save_initiated(operation_id, inputs))
        return operation_id

    def attach_stream(self, operation_id: str, channel: SSEChannel) -> asyncio.Task:
        """Bind a client channel to an operation and start a generation pass.

        Returns:
            The task running the pass.

        Raises:
            OperationNotFoundError: No such operation.
            StreamConflictError: A live stream is already bound to it.
        """
        operation = self._store.get(operation_id)
        if operation is None:
            logger.warning("Stream requested for unknown operation", operation_id=operation_id)
            raise OperationNotFoundError(operation_id)

        if operation.stream_attached:
            if operation.state is LifecycleState.STREAMING:
                logger.warning("Duplicate stream attach rejected", operation_id=operation_id)
                raise StreamConflictError(operation_id)
            # Channel of a pass superseded by refine that has not unwound yet
            operation.channel.close(discard_pending=True)

        previous_task = operation.pass_task
        scope = operation.rotate_scope("superseded")
        operation.channel = channel
        operation.state = LifecycleState.STREAMING

        task = asyncio.create_task(
            self._run_pass(operation_id, channel, scope, previous_task),
            name=f"analysis-pass-{operation_id}",
        )
        task.add_done_callback(lambda _: self._detach(operation_id, channel))
        operation.pass_task = task
        self._track(task)

        channel.on_client_disconnect(lambda _: self._on_client_disconnect(operation_id, scope, task))

        logger.info(
            "Analysis stream attached",
            operation_id=operation_id,
            refinement=operation.refinement is not None,
            scope=scope.tag,
        )
        return task

    def refine(
        self,
        operation_id: str,
        target_section: str,
        user_instruction: str,
        previous_output: str | None = None,
    ) -> RefineResult:
        """Prime an operation for a refinement pass.

        Aborts any in-flight pass and rotates the cancellation scope; the
        client reconnects its stream to receive the refined result.

        Raises:
            InvalidInputError: A required field is empty.
            OperationNotFoundError: No such operation.
        """
        if not operation_id or not target_section or not user_instruction:
            raise InvalidInputError("operationId, section and userInput are required.")

        operation = self._store.get(operation_id)
        if operation is None:
            logger.warning("Refine requested for unknown operation", operation_id=operation_id)
            raise OperationNotFoundError(operation_id)

        operation.refinement = RefinementRequest(
            target_section=target_section,
            user_instruction=user_instruction,
            previous_output=previous_output,
        )

        task = operation.pass_task
        in_flight = task is not None and not task.done()
        operation.rotate_scope("refined")
        if in_flight:
            task.cancel()
        operation.state = LifecycleState.REFINE_PENDING

        logger.info(
            "Refinement accepted",
            operation_id=operation_id,
            target_section=target_section,
            instruction_chars=len(user_instruction),
            interrupted_pass=in_flight,
        )
        message = "Refinement accepted. Reconnect the analysis stream to receive the refined result."
        if in_flight:
            message = "Refinement accepted and the running analysis was stopped. Reconnect the analysis stream."
        return RefineResult(message=message, interrupted_pass=in_flight)

    def cancel(self, operation_id: str) -> CancelResult:
        """Cancel and remove an operation. Idempotent."""
        operation = self._store.delete(operation_id)
        if operation is None:
            logger.info("Cancel requested for unknown or finished operation", operation_id=operation_id)
            return CancelResult(found=False, message="Operation not found or already cancelled.")

        self._release(operation, "cancelled")
        operations_total.labels(outcome="cancelled").inc()
        logger.info("Analysis operation cancelled", operation_id=operation_id)
        return CancelResult(found=True, message="Operation cancelled.")

    def get_operation(self, operation_id: str) -> Operation | None:
        """Look up an operation (refreshes its idle timer)."""
        return self._store.get(operation_id)

    def active_operations(self) -> int:
        """Number of live operations."""
        return self._store.count()

    def store_stats(self) -> dict:
        """Occupancy and limits of the operation store."""
        return self._store.get_stats()

    # =========================================================================
    # Generation pass
    # =========================================================================

    def _owned(self, operation_id: str, channel: SSEChannel, scope: CancellationScope) -> Operation | None:
        """Return the operation if this pass still owns its channel and scope."""
        operation = self._store.get(operation_id)
        if operation is None or scope.is_signaled:
            return None
        if operation.scope is not scope or operation.channel is not channel or channel.closed:
            return None
        return operation

    async def _run_pass(
        self,
        operation_id: str,
        channel: SSEChannel,
        scope: CancellationScope,
        previous_task: asyncio.Task | None,
    ) -> None:
        if previous_task is not None and not previous_task.done():
            # Passes of one operation never overlap
            await asyncio.wait({previous_task})

        operation = self._owned(operation_id, channel, scope)
        if operation is None:
            return

        inputs = operation.inputs
        refinement = operation.refinement
        pass_log = log_generation_start(
            operation_id,
            inputs.resume_text,
            inputs.job_posting_text,
            target_section=refinement.target_section if refinement else None,
        )

        fragments: list[str] = []
        outcome = "cancelled"
        error_message: str | None = None

        try:
            stream = self._generator.generate(
                inputs.resume_text,
                inputs.job_posting_text,
                refinement,
                scope,
            )
            async with aclosing(stream):
                async for fragment in stream:
                    if self._owned(operation_id, channel, scope) is None:
                        logger.info(
                            "Generation pass lost its stream, stopping",
                            operation_id=operation_id,
                            reason=scope.reason,
                        )
                        return
                    fragments.append(fragment)
                    channel.send(None, FragmentEvent(chunk=fragment))
                    generation_fragments_total.inc()

            operation = self._owned(operation_id, channel, scope)
            if operation is None:
                return

            payload = extract_structured_payload("".join(fragments))
            channel.send("complete", CompleteEvent(analysis=payload, operation_id=operation_id))
            operation.refinement = None
            operation.last_result = payload
            operation.passes_completed += 1
            operation.state = LifecycleState.COMPLETED
            outcome = "completed"

            if self._persister is not None:
                self._persist(operation_id, "final", lambda: self._persister.save_final(operation_id, payload))

        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except StructuredPayloadError as e:
            outcome, error_message = "error", str(e)
            self._fail(operation_id, channel, scope, ErrorEvent(error=str(e), details=e.preview or None))
        except GenerationError as e:
            outcome, error_message = "error", str(e)
            self._fail(operation_id, channel, scope, ErrorEvent(error=f"AI generation failed: {e}"))
        except Exception as e:
            logger.exception("Unexpected error in generation pass", operation_id=operation_id)
            outcome, error_message = "error", str(e)
            self._fail(
                operation_id,
                channel,
                scope,
                ErrorEvent(error="Internal server error while generating the analysis."),
            )
        finally:
            self._detach(operation_id, channel)
            log_generation_end(
                pass_log,
                outcome,
                fragments=len(fragments),
                response_chars=sum(len(fragment) for fragment in fragments),
                error=error_message,
            )

    def _fail(
        self,
        operation_id: str,
        channel: SSEChannel,
        scope: CancellationScope,
        event: ErrorEvent,
    ) -> None:
        """Deliver a terminal error unless the pass has been superseded."""
        operation = self._owned(operation_id, channel, scope)
        if operation is None:
            return
        channel.send("error", event)
        operation.state = LifecycleState.FAILED

    def _detach(self, operation_id: str, channel: SSEChannel) -> None:
        """Close a pass's channel and unbind it, keeping the operation. Idempotent."""
        channel.close()
        operation = self._store.get(operation_id)
        if operation is None or operation.channel is not channel:
            return
        operation.channel = None
        if operation.pass_task is not None and operation.pass_task.done():
            operation.pass_task = None
        if operation.state is LifecycleState.STREAMING:
            operation.state = LifecycleState.INTERRUPTED

    def _on_client_disconnect(self, operation_id: str, scope: CancellationScope, task: asyncio.Task) -> None:
        # The operation stays addressable: refine flows drop and reopen streams
        logger.info("Client left analysis stream", operation_id=operation_id, scope=scope.tag)
        scope.signal("client_disconnected")
        if not task.done():
            task.cancel()

    # =========================================================================
    # Release, expiry and shutdown
    # =========================================================================

    def _release(self, operation: Operation, reason: str) -> None:
        """Stop everything an operation holds. Used once it has left the store."""
        operation.scope.signal(reason)
        operation.state = LifecycleState.CANCELLED
        operation.refinement = None
        if operation.channel is not None:
            operation.channel.close(discard_pending=True)
            operation.channel = None
        task = operation.pass_task
        operation.pass_task = None
        if task is not None and not task.done():
            task.cancel()
        operations_active.set(self._store.count())

    def _release_dropped(self, operation: Operation, reason: str) -> None:
        self._release(operation, reason)
        operations_total.labels(outcome=reason).inc()

    def start_reaper(self, interval_seconds: float) -> None:
        """Start the periodic sweep that expires idle operations."""
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_forever(interval_seconds), name="operation-reaper")

    async def _reap_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                expired = self._store.cleanup_expired()
            except Exception as e:
                logger.error("Operation sweep failed", error=str(e))
                continue
            if expired:
                logger.info("Expired idle operations", expired=expired, active=self._store.count())

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every operation and wait briefly for background work."""
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.wait({self._reaper})
            self._reaper = None

        self._store.clear("shutdown")

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        logger.info("Operation manager shut down", abandoned=len(pending))

    # =========================================================================
    # Background work
    # =========================================================================

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._track(task)
        return task

    def _persist(self, operation_id: str, stage: str, write: Callable[[], Awaitable[None]]) -> None:
        """Queue a write behind the operation's previous one so records land in order."""
        previous = self._writes.get(operation_id)
        task = self._spawn(self._run_write(operation_id, stage, write, previous), f"persist-{stage}-{operation_id}")
        self._writes[operation_id] = task
        task.add_done_callback(lambda done: self._write_done(operation_id, done))

    def _write_done(self, operation_id: str, task: asyncio.Task) -> None:
        if self._writes.get(operation_id) is task:
            del self._writes[operation_id]

    async def _run_write(
        self,
        operation_id: str,
        stage: str,
        write: Callable[[], Awaitable[None]],
        previous: asyncio.Task | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await write()
        except Exception as e:
            persistence_failures_total.labels(stage=stage).inc()
            logger.warning("Failed to persist analysis", operation_id=operation_id, stage=stage, error=str(e))
