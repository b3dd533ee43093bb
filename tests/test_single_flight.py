import asyncio

import pytest

from app.core.single_flight import SingleFlight


def test_concurrent_calls_share_one_task():
    flight = SingleFlight()
    calls = []

    async def load():
        calls.append("load")
        await asyncio.sleep(0.01)
        return len(calls)

    async def run():
        first = asyncio.ensure_future(flight.do("alice", load))
        await asyncio.sleep(0)
        assert flight.in_flight("alice")
        results = await asyncio.gather(first, flight.do("alice", load), flight.do("bob", load))
        return results

    results = asyncio.run(run())

    assert calls == ["load", "load"]
    assert results[0] == results[1]
    assert not flight.in_flight("alice")


def test_failed_call_is_not_cached():
    flight = SingleFlight()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return "ok"

    async def run():
        with pytest.raises(RuntimeError):
            await flight.do("key", flaky)
        return await flight.do("key", flaky)

    assert asyncio.run(run()) == "ok"
    assert len(attempts) == 2
