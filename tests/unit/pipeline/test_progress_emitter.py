"""Unit tests for progress persistence, throttling and the in-process broker."""

import pytest

from ndaflow.pipeline.progress import ProgressBroker, ProgressEmitter, ProgressEvent
from ndaflow.repositories.analysis_repository import AnalysisRepository
from tests.fakes import create_run


def make_event(analysis_id: str, percent: int, status: str = "processing") -> ProgressEvent:
    return ProgressEvent(
        analysis_id=analysis_id,
        status=status,
        stage="classify",
        percent=percent,
        message="Classifying clauses...",
        queue_position=None,
        timestamp="2024-01-01T00:00:00+00:00",
    )


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestProgressBroker:
    """Test suite for ProgressBroker."""

    def test_publish_reaches_only_the_runs_subscribers(self):
        broker = ProgressBroker()
        queue = broker.subscribe("run-a")
        other = broker.subscribe("run-b")

        delivered = broker.publish(make_event("run-a", 10))

        assert delivered == 1
        assert queue.get_nowait().percent == 10
        assert other.empty()

    def test_full_queue_drops_oldest_event(self):
        broker = ProgressBroker(max_queue_size=2)
        queue = broker.subscribe("run-a")

        for percent in (10, 20, 30):
            broker.publish(make_event("run-a", percent))

        assert [queue.get_nowait().percent, queue.get_nowait().percent] == [20, 30]

    @pytest.mark.asyncio
    async def test_subscription_context_unsubscribes(self):
        broker = ProgressBroker()

        async with broker.subscription("run-a"):
            assert broker.subscriber_count("run-a") == 1

        assert broker.subscriber_count("run-a") == 0
        assert broker.publish(make_event("run-a", 10)) == 0

    def test_terminal_event_detection(self):
        assert make_event("run-a", 100, status="completed").is_terminal
        assert not make_event("run-a", 50, status="pending_ocr").is_terminal


class TestProgressEmitter:
    """Test suite for ProgressEmitter."""

    @pytest.mark.asyncio
    async def test_emit_persists_then_publishes(self, session_maker, document, broker):
        run = await create_run(session_maker, document, status="processing")
        emitter = ProgressEmitter(session_maker, broker)
        queue = broker.subscribe(run.id)

        event = await emitter.emit(run.id, "classify", 42.4, "Classifying clauses...")

        assert event.percent == 42
        assert queue.get_nowait() == event
        async with session_maker() as session:
            stored = await AnalysisRepository(session).require(run.id)
        assert stored.progress_stage == "classify"
        assert stored.progress_percent == 42
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, session_maker, document, broker):
        run = await create_run(session_maker, document, status="processing")
        emitter = ProgressEmitter(session_maker, broker, min_publish_interval=0)

        await emitter.emit(run.id, "classify", 50, "Classifying clauses...")
        event = await emitter.emit(run.id, "classify", 30, "Classifying clauses...")

        assert event.percent == 50

    @pytest.mark.asyncio
    async def test_terminal_run_is_left_untouched(self, session_maker, document, broker):
        run = await create_run(
            session_maker,
            document,
            status="cancelled",
            progress_stage="classify",
            progress_percent=40,
            progress_message="Analysis cancelled during clause classification",
        )
        emitter = ProgressEmitter(session_maker, broker)

        event = await emitter.emit(run.id, "score_risk", 60, "Assessing risk levels...")

        assert event.status == "cancelled"
        assert event.percent == 40
        assert event.stage == "classify"
        async with session_maker() as session:
            stored = await AnalysisRepository(session).require(run.id)
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_publication_is_throttled_within_a_stage(self, session_maker, document, broker):
        run = await create_run(session_maker, document, status="processing")
        clock = ManualClock()
        emitter = ProgressEmitter(session_maker, broker, min_publish_interval=1.0, clock=clock)
        queue = broker.subscribe(run.id)

        await emitter.emit(run.id, "classify", 40, "Classifying clauses...")
        await emitter.emit(run.id, "classify", 45, "Classifying clauses...")
        clock.now += 1.5
        await emitter.emit(run.id, "classify", 50, "Classifying clauses...")
        await emitter.emit(run.id, "score_risk", 55, "Assessing risk levels...")

        published = []
        while not queue.empty():
            published.append(queue.get_nowait().percent)
        assert published == [40, 50, 55]

        async with session_maker() as session:
            stored = await AnalysisRepository(session).require(run.id)
        assert stored.progress_percent == 55

    @pytest.mark.asyncio
    async def test_queue_position_change_bypasses_throttle(self, session_maker, document, broker):
        run = await create_run(session_maker, document, status="processing")
        emitter = ProgressEmitter(session_maker, broker, min_publish_interval=60, clock=ManualClock())
        queue = broker.subscribe(run.id)

        await emitter.emit(run.id, "classify", 40, "Classifying clauses...")
        await emitter.emit(run.id, "classify", 40, "Waiting for llm capacity", queue_position=2)

        assert queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_publish_current_ignores_throttle(self, session_maker, document, broker):
        run = await create_run(session_maker, document, status="processing")
        emitter = ProgressEmitter(session_maker, broker, min_publish_interval=60, clock=ManualClock())
        queue = broker.subscribe(run.id)

        await emitter.emit(run.id, "classify", 40, "Classifying clauses...")
        event = await emitter.publish_current(run.id)

        assert queue.qsize() == 2
        assert event.percent == 40
