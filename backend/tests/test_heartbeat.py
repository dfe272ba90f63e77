import asyncio

from backend.app.routers.heartbeat import heartbeat_stream, sse_event


def _collect(stream, limit=None):
    async def run():
        events = []
        async for event in stream:
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
        return events

    return asyncio.run(run())


def test_sse_event_format():
    assert sse_event("heartbeat", {"db": "ok"}) == 'event: heartbeat\ndata: {"db":"ok"}\n\n'


def test_stream_emits_heartbeats_until_probe_fails():
    results = iter([True, True, False])
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    events = _collect(
        heartbeat_stream(
            lambda: next(results),
            15,
            sleep=fake_sleep,
            clock=lambda: 1700000000.5,
        )
    )
    assert [e.split("\n")[0] for e in events] == [
        "event: connected",
        "event: heartbeat",
        "event: heartbeat",
        "event: offline",
    ]
    assert '"timestamp":1700000000500' in events[1]
    assert sleeps == [15, 15, 15]


def test_stream_keeps_going_while_db_is_up():
    async def no_wait(_seconds):
        return None

    events = _collect(heartbeat_stream(lambda: True, 1, sleep=no_wait), limit=5)
    assert events[0].startswith("event: connected")
    assert all(e.startswith("event: heartbeat") for e in events[1:])


def test_waiting_between_heartbeats_does_not_block_the_event_loop():
    log = []

    async def ticker():
        for _ in range(3):
            log.append("tick")
            await asyncio.sleep(0.001)

    async def drain():
        results = iter([True, False])
        async for event in heartbeat_stream(lambda: next(results), 0.05):
            log.append(event.split("\n")[0])

    async def run():
        await asyncio.gather(drain(), ticker())

    asyncio.run(run())
    assert log == ["event: connected", "tick", "tick", "tick", "event: heartbeat", "event: offline"]
