import asyncio
import logging

import aiohttp

from .device_queue import DeviceQueue
from .events import EventStream
from .exceptions import GatewayError, ScanEventError
from .models import ScanEvent


class ScanListener:
    """Feeds every device seen by the scan stream into the connect queue."""

    def __init__(self, stream: EventStream, queue: DeviceQueue):
        self.stream = stream
        self.queue = queue
        self.log = logging.getLogger("Scan")
        self.seen = 0
        self.skipped = 0

    async def run(self):
        try:
            async for message in self.stream:
                self.handle_message(message.data)
        except (GatewayError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log.error(f"open scan sse failed: {e!r}")
        finally:
            self.log.info(f"Scan stream closed after {self.seen} events")

    def handle_message(self, data: str):
        try:
            event = ScanEvent.from_json(data)
            self.seen += 1
            if self.queue.enqueue(event.to_entry()):
                self.log.debug(f"Queued {event.mac} {event.name or ''} rssi={event.rssi}")
        except ScanEventError as e:
            self.skipped += 1
            self.log.warning(f"Skipping scan event: {e}")
        except Exception as e:
            self.skipped += 1
            self.log.error(f"Scan event error: {e!r}")


class NotificationListener:
    """Logs every notification/indication pushed by the router."""

    def __init__(self, stream: EventStream):
        self.stream = stream
        self.log = logging.getLogger("Notify")

    async def run(self):
        try:
            async for message in self.stream:
                self.log.info(f"received notify sse message: {message.data}")
        except (GatewayError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log.error(f"open notify sse failed: {e!r}")
