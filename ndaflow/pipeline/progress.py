"""Progress persistence and best-effort publication.

The ``analyses`` row is the authoritative progress record; every emit writes it
first. Publication to live subscribers happens afterwards, is throttled per run,
and may drop events, so a subscriber that falls behind reconciles by reading the
row again.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Set
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.database.models import AnalysisRun
from ndaflow.pipeline.state import TERMINAL_STATUSES, AnalysisStatus
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    analysis_id: str
    status: str
    stage: Optional[str]
    percent: int
    message: Optional[str]
    queue_position: Optional[int]
    timestamp: str

    @classmethod
    def from_run(cls, run: AnalysisRun) -> "ProgressEvent":
        return cls(
            analysis_id=str(run.id),
            status=run.status,
            stage=run.progress_stage,
            percent=run.progress_percent or 0,
            message=run.progress_message,
            queue_position=run.queue_position,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @property
    def is_terminal(self) -> bool:
        return AnalysisStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class ProgressBroker:
    """In-process publish/subscribe channel with one topic per analysis.

    Each subscriber gets a bounded queue. When a queue is full the oldest event
    is dropped to make room, so subscribers always see the most recent state
    and never see events out of order.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._topics: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, analysis_id: UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._topics.setdefault(str(analysis_id), set()).add(queue)
        return queue

    def unsubscribe(self, analysis_id: UUID, queue: asyncio.Queue) -> None:
        topic = self._topics.get(str(analysis_id))
        if topic is None:
            return
        topic.discard(queue)
        if not topic:
            del self._topics[str(analysis_id)]

    @asynccontextmanager
    async def subscription(self, analysis_id: UUID) -> AsyncIterator[asyncio.Queue]:
        queue = self.subscribe(analysis_id)
        try:
            yield queue
        finally:
            self.unsubscribe(analysis_id, queue)

    def subscriber_count(self, analysis_id: UUID) -> int:
        return len(self._topics.get(str(analysis_id), ()))

    def publish(self, event: ProgressEvent) -> int:
        """Deliver ``event`` to every subscriber of its topic; returns the count."""
        delivered = 0
        for queue in list(self._topics.get(event.analysis_id, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
            delivered += 1
        return delivered


class ProgressEmitter:
    """Persist progress snapshots and publish them to subscribers.

    Persisted percent never decreases: a lower value than the stored one is
    raised to the stored one. Terminal runs are left untouched.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broker: Optional[ProgressBroker] = None,
        min_publish_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_maker = session_maker
        self.broker = broker or ProgressBroker()
        self.min_publish_interval = min_publish_interval
        self._clock = clock
        self._last_published: Dict[str, tuple] = {}

    async def emit(
        self,
        analysis_id: UUID,
        stage: str,
        percent: float,
        message: str,
        queue_position: Optional[int] = None,
    ) -> ProgressEvent:
        """Persist a progress snapshot, then publish it unless throttled.

        Returns:
            The event as persisted
        """
        requested = max(0, min(100, int(round(percent))))

        def mutate(run: AnalysisRun) -> Optional[dict]:
            if AnalysisStatus(run.status) in TERMINAL_STATUSES:
                return None
            changes = {
                "progress_stage": stage,
                "progress_percent": max(run.progress_percent or 0, requested),
                "progress_message": message,
                "queue_position": queue_position,
            }
            unchanged = all(getattr(run, column) == value for column, value in changes.items())
            return None if unchanged else changes

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(analysis_id, mutate)

        event = ProgressEvent.from_run(run)
        self._maybe_publish(event)
        return event

    async def publish_current(self, analysis_id: UUID) -> ProgressEvent:
        """Publish the persisted state unthrottled, e.g. after a status change."""
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)
        event = ProgressEvent.from_run(run)
        self._publish(event)
        if event.is_terminal:
            self._last_published.pop(event.analysis_id, None)
        return event

    def _maybe_publish(self, event: ProgressEvent) -> None:
        last = self._last_published.get(event.analysis_id)
        now = self._clock()
        if last is not None:
            last_time, last_stage, last_queue = last
            stage_changed = last_stage != event.stage or last_queue != event.queue_position
            if not stage_changed and event.percent < 100 and now - last_time < self.min_publish_interval:
                return
        self._publish(event)

    def _publish(self, event: ProgressEvent) -> None:
        self._last_published[event.analysis_id] = (self._clock(), event.stage, event.queue_position)
        delivered = self.broker.publish(event)
        LOGGER.debug(
            f"Progress {event.percent}% ({event.stage}): {event.message}",
            extra={"analysis_id": event.analysis_id, "subscribers": delivered},
        )
