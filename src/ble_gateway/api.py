"""Thin wrapper around the router's local REST API.

Endpoints used:
    GET  /gap/nodes?event=1&...                        scan stream (SSE)
    POST /gap/nodes/<mac>/connection                   connect a device
    GET  /gatt/nodes/<mac>/handle/<handle>/value/<hex> write a handle
    GET  /gatt/nodes                                   notification stream (SSE)
"""

import logging
from typing import Optional

import aiohttp

from . import config
from .events import EventStream
from .exceptions import GatewayRequestError
from .models import AddressType

logger = logging.getLogger("Gateway")

# Paths
URL_SCAN = "/gap/nodes"
URL_CONNECT = "/gap/nodes/{}/connection"
URL_WRITE_HANDLE = "/gatt/nodes/{}/handle/{}/value/{}"
URL_NOTIFY = "/gatt/nodes"

# Slack on top of the router-side connect timeout
REQUEST_TIMEOUT_SLACK = 10


class GatewayClient:
    def __init__(self, session: aiohttp.ClientSession, host: str = config.HOST):
        self.session = session
        self.host = host.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.host}{path}"

    async def _request(self, method: str, url: str, timeout_s: float, **kwargs) -> str:
        timeout = aiohttp.ClientTimeout(total=timeout_s)
        async with self.session.request(method, url, timeout=timeout, **kwargs) as response:
            body = await response.text()
            if response.status != 200:
                raise GatewayRequestError(response.status, body)
            return body

    def scan_stream(self, filter_rssi: Optional[int] = config.SCAN_FILTER_RSSI,
                    filter_name: Optional[str] = config.SCAN_FILTER_NAME,
                    active: bool = config.SCAN_ACTIVE) -> EventStream:
        """Scan results as an event stream.

        Filtering on the router (RSSI threshold, name glob) keeps traffic down,
        active scanning makes devices answer with a scan response which
        usually carries their name.
        """
        params = {"event": 1}
        if filter_rssi is not None:
            params["filter_rssi"] = filter_rssi
        if filter_name:
            params["filter_name"] = filter_name
        params["active"] = 1 if active else 0
        return EventStream(self.session, self._url(URL_SCAN), params=params)

    def notification_stream(self) -> EventStream:
        """Notifications and indications of every connected device."""
        return EventStream(self.session, self._url(URL_NOTIFY))

    async def connect(self, mac: str, addr_type: AddressType,
                      timeout_ms: int = config.CONNECT_TIMEOUT_MS) -> str:
        url = self._url(URL_CONNECT.format(mac))
        payload = {"timeout": timeout_ms, "type": AddressType(addr_type).value}
        logger.info(f"connect device {mac}")
        return await self._request(
            "POST", url, timeout_ms / 1000.0 + REQUEST_TIMEOUT_SLACK, json=payload)

    async def write_handle(self, mac: str, handle: int, value: str) -> str:
        """Write a hex encoded value to a characteristic handle."""
        url = self._url(URL_WRITE_HANDLE.format(mac, handle, value))
        return await self._request("GET", url, REQUEST_TIMEOUT_SLACK)

    async def enable_notifications(self, mac: str, handle: int = config.NOTIFY_HANDLE) -> str:
        return await self.write_handle(mac, handle, config.NOTIFY_ENABLE_VALUE)
