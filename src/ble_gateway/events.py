"""Server-Sent Events subscriptions on the shared aiohttp session.

The router pushes scan results and notifications as ``text/event-stream``
responses that never end. ``EventStream`` wraps one such subscription as an
async iterator of ``StreamMessage`` objects:

    stream = EventStream(session, f"{HOST}/gatt/nodes")
    async for message in stream:
        ...

Framing and reconnects after a dropped stream are left to aiohttp-sse-client.
A stream can be iterated only once, cancel the consuming task to end it.
"""

import logging
from datetime import timedelta
from typing import AsyncIterator, Optional

import aiohttp
from aiohttp_sse_client import client as sse_client

from . import config
from .exceptions import StreamError
from .models import StreamMessage

logger = logging.getLogger("Stream")

# Streams stay open forever, only bound the connect phase
STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=10)


class EventStream:
    def __init__(self, session: aiohttp.ClientSession, url: str, params: Optional[dict] = None,
                 max_connect_retry: int = config.STREAM_MAX_RETRY,
                 reconnection_time: float = config.STREAM_RECONNECT_TIME):
        self.session = session
        self.url = url
        self.params = params
        self.max_connect_retry = max_connect_retry
        self.reconnection_time = reconnection_time
        self._started = False

    def __aiter__(self) -> AsyncIterator[StreamMessage]:
        if self._started:
            raise StreamError(f"Event stream {self.url} was already consumed")
        self._started = True
        return self._messages()

    async def _messages(self) -> AsyncIterator[StreamMessage]:
        try:
            async with sse_client.EventSource(
                self.url,
                session=self.session,
                reconnection_time=timedelta(seconds=self.reconnection_time),
                max_connect_retry=self.max_connect_retry,
                params=self.params,
                timeout=STREAM_TIMEOUT,
            ) as source:
                logger.debug(f"Opened {self.url}")
                async for event in source:
                    yield StreamMessage(
                        data=event.data,
                        event=event.type or "message",
                        id=event.last_event_id or None,
                    )
        except (ConnectionError, aiohttp.ClientError) as e:
            raise StreamError(f"{self.url}: {e}") from e

        raise StreamError(f"Event stream {self.url} ended")
