import asyncio
import logging

from . import config
from .api import GatewayClient
from .device_queue import DeviceQueue
from .models import QueueEntry

logger = logging.getLogger("Drain")


class ConnectDrainLoop:
    """Connects queued devices one at a time and enables their notifications.

    Each pass empties the queue, then the loop waits ``interval`` seconds
    before looking again. A failed device is dropped, it comes back only if
    the scan stream reports it again.
    """

    def __init__(self, client: GatewayClient, queue: DeviceQueue,
                 interval: float = config.DRAIN_INTERVAL,
                 connect_timeout_ms: int = config.CONNECT_TIMEOUT_MS,
                 notify_handle: int = config.NOTIFY_HANDLE):
        self.client = client
        self.queue = queue
        self.interval = interval
        self.connect_timeout_ms = connect_timeout_ms
        self.notify_handle = notify_handle
        self.connected = 0
        self.failed = 0
        self._stop = asyncio.Event()

    @property
    def stopping(self):
        return self._stop.is_set()

    async def run(self):
        logger.info(f"Drain loop started (interval {self.interval}s)")
        while not self._stop.is_set():
            await self.drain_once()

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Drain loop stopped ({self.connected} connected, {self.failed} failed)")

    async def drain_once(self) -> int:
        processed = 0
        while not self._stop.is_set():
            entry = self.queue.dequeue()
            if entry is None:
                break
            await self.process(entry)
            processed += 1

        if processed:
            logger.debug(f"Pass done, {processed} device(s), {len(self.queue)} left")
        return processed

    async def process(self, entry: QueueEntry) -> bool:
        log = logging.getLogger(f"Dev-{str(entry.mac)[-5:]}")
        try:
            result = await self.client.connect(entry.mac, entry.addr_type, self.connect_timeout_ms)
            # open notifications only once the connection is up
            await self.client.enable_notifications(entry.mac, self.notify_handle)
        except Exception as e:
            self.failed += 1
            log.error(f"connect {entry.mac} {e!r}")
            return False

        self.connected += 1
        log.info(f"connect {entry.mac} {result}")
        return True

    def stop(self):
        self._stop.set()
