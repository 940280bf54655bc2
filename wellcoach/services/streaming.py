"""
Text event stream: typed events written by the coordinator and drained by the transport.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from ..models.core import TurnRequest, to_jsonable
from ..utils.logging_config import get_logger, log_stage

logger = get_logger(__name__)

PUBLIC_ERROR_MESSAGE = 'Something went wrong while preparing your reply. Please try again.'


class EventType(str, Enum):
    STATUS = 'status'
    DISPATCHER = 'dispatcher'
    AGENT_UPDATE = 'agent_update'
    TEXT_CHUNK = 'text_chunk'
    FINAL = 'final'
    ERROR = 'error'
    DONE = 'done'


TERMINAL_EVENTS = (EventType.FINAL, EventType.ERROR)


class TransportDisconnect(Exception):
    """Raised when writing to a channel whose consumer has gone away."""
    pass


@dataclass
class StreamEvent:
    type: EventType
    message: str = ''
    agent: Optional[str] = None
    payload: Any = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {'type': self.type.value}
        if self.message:
            body['message'] = self.message
        if self.agent:
            body['agent'] = self.agent
        if self.payload is not None:
            body['payload'] = to_jsonable(self.payload)
        if self.data:
            body.update(to_jsonable(self.data))
        return body

    def to_sse(self) -> str:
        return format_sse_event(self.type, self.to_dict())


def format_sse_event(event_type: EventType, body: Dict[str, Any]) -> str:
    """Frame one event in text/event-stream format."""
    return f'event: {event_type.value}\ndata: {json.dumps(body, ensure_ascii=False)}\n\n'


class EventChannel:
    """Ordered queue of StreamEvents between one producer and one consumer."""

    def __init__(self, maxsize: int = 0):
        self._queue: 'asyncio.Queue[Optional[StreamEvent]]' = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def emit(self, event: StreamEvent) -> None:
        """
        Enqueue an event.

        Raises:
            TransportDisconnect: If the channel was closed by the consumer
        """
        if self.closed:
            raise TransportDisconnect('Event channel closed')
        await self._queue.put(event)

    async def send(self, event_type: EventType, message: str = '', agent: Optional[str] = None, payload: Any = None,
                   **data: Any) -> None:
        await self.emit(StreamEvent(event_type, message=message, agent=agent, payload=payload, data=data))

    async def finish(self) -> None:
        """Signal the consumer that the producer is done."""
        if not self.closed:
            await self._queue.put(None)

    async def get(self) -> Optional[StreamEvent]:
        return await self._queue.get()

    def close(self) -> None:
        self.closed = True


async def stream_turn(coordinator: Any, request: TurnRequest) -> AsyncIterator[StreamEvent]:
    """Run a turn and yield its events in production order.

    The stream always ends with exactly one final or error event followed by
    done. Closing the generator early (client disconnect) closes the channel
    and cancels the pipeline task.

    Args:
        coordinator: Object exposing async run_turn(request, channel)
        request: Turn to run

    Yields:
        StreamEvent
    """
    channel = EventChannel()
    outcome: Dict[str, Any] = {}

    async def produce() -> None:
        try:
            outcome['result'] = await coordinator.run_turn(request, channel)
        except TransportDisconnect:
            log_stage(logger, logging.INFO, 'transport', 'Client disconnected, pipeline stopped', request.session_id)
        except Exception as e:
            outcome['error'] = e
        finally:
            await channel.finish()

    task = asyncio.create_task(produce())
    try:
        while True:
            event = await channel.get()
            if event is None:
                break
            yield event

        await task
        if 'result' in outcome:
            yield StreamEvent(EventType.FINAL, payload=outcome['result'].to_dict())
        else:
            error = outcome.get('error')
            message = getattr(error, 'public_message', PUBLIC_ERROR_MESSAGE)
            log_stage(logger, logging.ERROR, 'transport', f'Turn failed: {error!r}', request.session_id)
            yield StreamEvent(EventType.ERROR, message=message)
        yield StreamEvent(EventType.DONE)
    finally:
        channel.close()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                log_stage(logger, logging.INFO, 'transport', 'Pipeline task cancelled after disconnect',
                          request.session_id)
