"""
Event Bus - Pub/sub for workflow execution events.

Lets callers observe a run without coupling to the executor:
- Execution lifecycle (started, paused, resumed, completed, failed, cancelled)
- Block lifecycle (started, completed, failed)
- Loop/parallel iteration progress
- Streamed output chunks
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_CANCELLED = "execution_cancelled"

    # Block lifecycle
    BLOCK_STARTED = "block_started"
    BLOCK_COMPLETED = "block_completed"
    BLOCK_FAILED = "block_failed"

    # Subflows
    LOOP_ITERATION = "loop_iteration"

    # Streaming
    STREAM_CHUNK = "stream_chunk"

    # Custom events
    CUSTOM = "custom"


@dataclass
class WorkflowEvent:
    """An event emitted during workflow execution."""

    type: EventType
    workflow_id: str
    block_id: str | None = None  # Which block emitted this event
    execution_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "block_id": self.block_id,
            "execution_id": self.execution_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


# Type for event handlers
EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_workflow: str | None = None
    filter_block: str | None = None
    filter_execution: str | None = None


class EventBus:
    """
    Pub/sub event bus for execution events.

    Example:
        bus = EventBus()

        async def on_block_done(event: WorkflowEvent):
            print(f"{event.block_id} finished in {event.data['duration_ms']}ms")

        bus.subscribe(event_types=[EventType.BLOCK_COMPLETED], handler=on_block_done)
        executor = WorkflowExecutor(workflow, handlers=handlers, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[WorkflowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_block: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_workflow=filter_workflow,
            filter_block=filter_block,
            filter_execution=filter_execution,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: WorkflowEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_workflow and subscription.filter_workflow != event.workflow_id:
            return False
        if subscription.filter_block and subscription.filter_block != event.block_id:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: WorkflowEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_execution_started(
        self,
        workflow_id: str,
        execution_id: str,
        start_block_id: str | None = None,
        input_data: dict[str, Any] | None = None,
    ) -> None:
        """Emit execution started event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_STARTED,
                workflow_id=workflow_id,
                block_id=start_block_id,
                execution_id=execution_id,
                data={"input": input_data or {}},
            )
        )

    async def emit_execution_completed(
        self,
        workflow_id: str,
        execution_id: str,
        output: Any = None,
    ) -> None:
        """Emit execution completed event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_COMPLETED,
                workflow_id=workflow_id,
                execution_id=execution_id,
                data={"output": output},
            )
        )

    async def emit_execution_failed(
        self,
        workflow_id: str,
        execution_id: str,
        error: str,
    ) -> None:
        """Emit execution failed event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_FAILED,
                workflow_id=workflow_id,
                execution_id=execution_id,
                data={"error": error},
            )
        )

    async def emit_execution_paused(
        self,
        workflow_id: str,
        execution_id: str,
        block_id: str | None,
        pending_blocks: list[str],
    ) -> None:
        """Emit execution paused event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_PAUSED,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"pending_blocks": pending_blocks},
            )
        )

    async def emit_execution_resumed(
        self,
        workflow_id: str,
        execution_id: str,
        pending_blocks: list[str],
    ) -> None:
        """Emit execution resumed event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_RESUMED,
                workflow_id=workflow_id,
                execution_id=execution_id,
                data={"pending_blocks": pending_blocks},
            )
        )

    async def emit_execution_cancelled(self, workflow_id: str, execution_id: str) -> None:
        """Emit execution cancelled event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.EXECUTION_CANCELLED,
                workflow_id=workflow_id,
                execution_id=execution_id,
            )
        )

    async def emit_block_started(
        self,
        workflow_id: str,
        block_id: str,
        execution_id: str | None = None,
        block_type: str = "",
    ) -> None:
        """Emit block started event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_STARTED,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"block_type": block_type},
            )
        )

    async def emit_block_completed(
        self,
        workflow_id: str,
        block_id: str,
        execution_id: str | None = None,
        duration_ms: int = 0,
    ) -> None:
        """Emit block completed event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_COMPLETED,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"duration_ms": duration_ms},
            )
        )

    async def emit_block_failed(
        self,
        workflow_id: str,
        block_id: str,
        error: str,
        execution_id: str | None = None,
    ) -> None:
        """Emit block failed event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.BLOCK_FAILED,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"error": error},
            )
        )

    async def emit_loop_iteration(
        self,
        workflow_id: str,
        block_id: str,
        iteration: int,
        execution_id: str | None = None,
    ) -> None:
        """Emit loop/parallel iteration event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.LOOP_ITERATION,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"iteration": iteration},
            )
        )

    async def emit_stream_chunk(
        self,
        workflow_id: str,
        block_id: str,
        content: str,
        execution_id: str | None = None,
    ) -> None:
        """Emit streamed output chunk event."""
        await self.publish(
            WorkflowEvent(
                type=EventType.STREAM_CHUNK,
                workflow_id=workflow_id,
                block_id=block_id,
                execution_id=execution_id,
                data={"content": content},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        workflow_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if workflow_id:
            events = [e for e in events if e.workflow_id == workflow_id]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        workflow_id: str | None = None,
        block_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_workflow=workflow_id,
            filter_block=block_id,
            filter_execution=execution_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
