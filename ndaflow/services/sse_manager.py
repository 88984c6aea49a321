import asyncio
import json
from typing import AsyncGenerator, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.config import settings
from ndaflow.core.database import async_session_maker
from ndaflow.core.exceptions import AnalysisNotFoundError
from ndaflow.pipeline.progress import ProgressBroker, ProgressEvent
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.schemas.sse_schemas import TERMINAL_EVENT_TYPES, SSEEvent, SSEEventType
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SSEManager:
    """Streams progress of one analysis as server-sent events.

    Live events come from the progress broker. Because the broker may drop
    events, the stored row is re-read whenever the broker stays quiet for a
    poll interval; that read doubles as the keep-alive tick. Percent on the
    stream never goes down, and the stream ends with the terminal event.
    """

    def __init__(
        self,
        broker: ProgressBroker,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        poll_interval: Optional[float] = None,
    ):
        self.broker = broker
        self._session_maker = session_maker
        self.poll_interval = poll_interval if poll_interval is not None else settings.sse_poll_interval_seconds
        self._last_key: Optional[Tuple] = None
        self._last_percent = 0

    async def stream_analysis_events(self, analysis_id: UUID) -> AsyncGenerator[str, None]:
        """Stream SSE events for one analysis until it reaches a terminal status."""
        async with self.broker.subscription(analysis_id) as queue:
            try:
                # subscribed first so nothing published after the snapshot is missed
                snapshot = await self._snapshot(analysis_id)
                for message in self._accept(snapshot, force=True):
                    yield message
                if snapshot.is_terminal:
                    return

                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        yield self._format_sse(SSEEvent(
                            event_type=SSEEventType.HEARTBEAT,
                            analysis_id=analysis_id,
                            data={"message": "keep-alive"},
                        ))
                        event = await self._snapshot(analysis_id)

                    for message in self._accept(event):
                        yield message
                    if event.is_terminal:
                        break

            except asyncio.CancelledError:
                LOGGER.info(f"SSE connection cancelled for analysis {analysis_id}")
                raise
            except AnalysisNotFoundError:
                LOGGER.info(f"Analysis {analysis_id} disappeared while streaming")
                yield self._format_sse(SSEEvent(
                    event_type=SSEEventType.ANALYSIS_FAILED,
                    analysis_id=analysis_id,
                    data={"message": "Analysis no longer exists"},
                ))
            except Exception as e:
                LOGGER.error(f"Error in SSE stream for {analysis_id}: {e}", exc_info=True)
                yield self._format_sse(SSEEvent(
                    event_type=SSEEventType.ANALYSIS_FAILED,
                    analysis_id=analysis_id,
                    data={"message": f"Stream error: {str(e)}"},
                ))

    async def _snapshot(self, analysis_id: UUID) -> ProgressEvent:
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)
        return ProgressEvent.from_run(run)

    def _accept(self, event: ProgressEvent, force: bool = False):
        """Yield the formatted event unless it repeats or regresses the last one sent."""
        key = (event.status, event.stage, event.percent, event.message, event.queue_position)
        if not force and key == self._last_key:
            return
        if not event.is_terminal and event.percent < self._last_percent:
            # stale broker event overtaken by a fresher row read
            return

        self._last_key = key
        self._last_percent = max(self._last_percent, event.percent)
        event_type = TERMINAL_EVENT_TYPES.get(event.status, SSEEventType.ANALYSIS_PROGRESS)
        yield self._format_sse(SSEEvent(
            event_type=event_type,
            analysis_id=UUID(event.analysis_id),
            data=event.to_dict(),
        ))

    def _format_sse(self, event: SSEEvent) -> str:
        """Format an SSEEvent as a raw SSE message."""
        data = event.model_dump(mode="json")
        return f"event: {data['event_type']}\ndata: {json.dumps(data)}\n\n"
