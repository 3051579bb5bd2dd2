"""
Polling loop shared by the inbound and outbox workers.

run() calls process_once() back to back while it finds work and sleeps
poll_interval when the queue is empty or a tick fails. stop() only raises a
flag: the batch in flight is finished before run() returns.
"""
import asyncio
import logging

from venue_relay.utils.redact import debug_exception, sanitize_for_log

logger = logging.getLogger(__name__)


class PollingWorker:
    name = "worker"

    def __init__(self, poll_interval: float) -> None:
        self.poll_interval = poll_interval
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def process_once(self) -> int:
        raise NotImplementedError

    async def run(self) -> None:
        logger.info("%s started", self.name)
        while not self._stopping.is_set():
            try:
                handled = await self.process_once()
            except Exception as e:
                logger.warning("%s tick failed: %s", self.name, sanitize_for_log(str(e)))
                debug_exception(logger, e, f"{self.name} tick")
                handled = 0
            if handled == 0:
                await self._idle()
        logger.info("%s stopped", self.name)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    def start(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
