"""Tests for the result distributor."""

import asyncio

import pytest

from nextbus_collector.models.responses import FetchResult
from nextbus_collector.services.pipeline.distributor import Distributor

from .fixtures.nextbus_fixture import make_fetch_result


class TestDistributor:
    """Unit tests for Distributor fan-out."""

    @pytest.mark.asyncio
    async def test_copies_each_result_to_every_output_in_order(self) -> None:
        source: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        outputs: list[asyncio.Queue[FetchResult | None]] = [asyncio.Queue(), asyncio.Queue()]
        results = [make_fetch_result(url=f"http://nextbus.test/?n={n}") for n in range(3)]
        for result in results:
            source.put_nowait(result)
        source.put_nowait(None)

        distributor = Distributor(source, outputs)
        distributor.start()
        assert await distributor.wait_stopped(timeout=1.0)

        for output in outputs:
            items = [output.get_nowait() for _ in range(output.qsize())]
            assert items == [*results, None]
        assert distributor.distributed_count == 3

    @pytest.mark.asyncio
    async def test_back_pressure_from_slow_output(self) -> None:
        source: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        fast: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        slow: asyncio.Queue[FetchResult | None] = asyncio.Queue(maxsize=1)
        for n in range(3):
            source.put_nowait(make_fetch_result(url=f"http://nextbus.test/?n={n}"))
        source.put_nowait(None)

        distributor = Distributor(source, (fast, slow))
        distributor.start()
        await asyncio.sleep(0.02)
        assert not distributor.has_stopped
        assert slow.qsize() == 1

        received = []
        while True:
            item = await asyncio.wait_for(slow.get(), timeout=1.0)
            received.append(item)
            if item is None:
                break
        assert await distributor.wait_stopped(timeout=1.0)
        assert len(received) == 4
        assert fast.qsize() == 4

    @pytest.mark.asyncio
    async def test_stop_closes_outputs(self) -> None:
        source: asyncio.Queue[FetchResult | None] = asyncio.Queue()
        output: asyncio.Queue[FetchResult | None] = asyncio.Queue()

        distributor = Distributor(source, (output,))
        distributor.start()
        assert await distributor.stop(timeout=1.0)

        assert output.get_nowait() is None
