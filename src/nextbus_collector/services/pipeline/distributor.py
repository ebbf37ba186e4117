"""Fan-out of fetch results to independent downstream queues."""

from __future__ import annotations

from typing import TYPE_CHECKING

from nextbus_collector.logging import get_logger
from nextbus_collector.services.pipeline.stage import Stage, Wakeup, close_queues

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence

    from nextbus_collector.models.responses import FetchResult

logger = get_logger(__name__)


class Distributor(Stage):
    """Copies every result, in order, to each output queue.

    Closing the input (end-of-stream) closes every output. The stage then
    finishes on its own; it has no other state to drain.
    """

    name = "VLR Splitter"

    def __init__(
        self,
        input_queue: asyncio.Queue[FetchResult | None],
        outputs: Sequence[asyncio.Queue[FetchResult | None]],
    ) -> None:
        super().__init__()
        self.input_queue = input_queue
        self.outputs = tuple(outputs)
        self.distributed_count = 0

    async def run(self) -> None:
        while True:
            result = await self.receive(self.input_queue)
            if result is None:
                break
            if isinstance(result, Wakeup):
                logger.warning("Stopped before input was closed", pending=self.input_queue.qsize())
                break
            for output in self.outputs:
                await output.put(result)
            self.distributed_count += 1
        await close_queues(self.outputs)
        logger.info(
            "Input closed, closed all outputs",
            distributed=self.distributed_count,
            outputs=len(self.outputs),
        )
