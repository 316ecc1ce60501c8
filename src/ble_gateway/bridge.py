import asyncio
import logging
from typing import Optional

import aiohttp

from . import config
from .api import GatewayClient
from .device_queue import DeviceQueue
from .drain import ConnectDrainLoop
from .listeners import NotificationListener, ScanListener

logger = logging.getLogger("Bridge")


class Bridge:
    """Owns the connect queue and everything that reads or writes it."""

    def __init__(self, host: str = config.HOST, drain_interval: float = config.DRAIN_INTERVAL,
                 session: Optional[aiohttp.ClientSession] = None):
        self.host = host
        self.drain_interval = drain_interval
        self.queue = DeviceQueue()
        self._session = session
        self._owns_session = session is None
        self.scan_listener: Optional[ScanListener] = None
        self.notify_listener: Optional[NotificationListener] = None
        self.drain_loop: Optional[ConnectDrainLoop] = None

    async def run(self):
        logger.info("========================================")
        logger.info(f"   BLE Gateway Client -> {self.host}")
        logger.info("========================================")

        if self._session is None:
            self._session = aiohttp.ClientSession()

        client = GatewayClient(self._session, self.host)
        self.scan_listener = ScanListener(client.scan_stream(), self.queue)
        self.notify_listener = NotificationListener(client.notification_stream())
        self.drain_loop = ConnectDrainLoop(client, self.queue, interval=self.drain_interval)

        listener_tasks = [
            asyncio.create_task(self.scan_listener.run()),
            asyncio.create_task(self.notify_listener.run()),
        ]
        try:
            await self.drain_loop.run()
        finally:
            for task in listener_tasks:
                task.cancel()
            results = await asyncio.gather(*listener_tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Listener crashed: {result!r}")

            if self._owns_session:
                await self._session.close()
                self._session = None
            logger.info(f"Bridge stopped, {len(self.queue)} device(s) still queued")

    def stop(self):
        if self.drain_loop is not None:
            self.drain_loop.stop()
