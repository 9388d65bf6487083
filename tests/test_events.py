import pytest

from novel_engine.events import EventChannel, EventKind, ProgressEvent
from novel_engine.models.session import GenerationPhase, SessionStatus


def event(kind=EventKind.PHASE_CHANGED):
    return ProgressEvent(
        session_id="s1",
        kind=kind,
        phase=GenerationPhase.GENERATING,
        status=SessionStatus.GENERATING,
    )


@pytest.mark.asyncio
async def test_every_queue_receives_events():
    channel = EventChannel()
    first, second = channel.subscribe(), channel.subscribe()
    channel.publish(event(EventKind.SESSION_STARTED))
    assert (await first.get()).kind == EventKind.SESSION_STARTED
    assert (await second.get()).kind == EventKind.SESSION_STARTED


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking():
    channel = EventChannel()
    queue = channel.subscribe(maxsize=1)
    channel.publish(event(EventKind.SESSION_STARTED))
    channel.publish(event(EventKind.USAGE))
    assert queue.qsize() == 1
    assert queue.get_nowait().kind == EventKind.SESSION_STARTED


@pytest.mark.asyncio
async def test_unsubscribe():
    channel = EventChannel()
    queue = channel.subscribe()
    channel.unsubscribe(queue)
    channel.publish(event())
    assert queue.empty()


def test_failing_listener_does_not_stop_others():
    channel = EventChannel()
    received = []

    def broken(e):
        raise RuntimeError("boom")

    channel.add_listener(broken)
    channel.add_listener(received.append)
    channel.publish(event())
    assert len(received) == 1

    channel.remove_listener(received.append)
    channel.publish(event())
    assert len(received) == 1
