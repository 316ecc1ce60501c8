import asyncio
import importlib
import json
import os
import unittest
from unittest import mock

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from . import config
from .api import GatewayClient
from .bridge import Bridge
from .device_queue import DeviceQueue
from .drain import ConnectDrainLoop
from .events import EventStream
from .exceptions import GatewayRequestError, ScanEventError, StreamError
from .listeners import NotificationListener, ScanListener
from .models import AddressType, QueueEntry, ScanEvent

MAC_A = "ED:47:B0:D3:A9:C8"
MAC_B = "C0:00:5B:D1:AA:01"
MAC_C = "C0:00:5B:D1:AA:02"


def scan_payload(mac, addr_type="public", name="Cassia Tag", rssi=-40, extra_addrs=()):
    addrs = [{"bdaddr": mac, "bdaddrType": addr_type}]
    addrs.extend({"bdaddr": a, "bdaddrType": "random"} for a in extra_addrs)
    return json.dumps({
        "bdaddrs": addrs,
        "scanData": "0C09536C656570616365205A32",
        "name": name,
        "rssi": rssi,
        "evt_type": 4,
    })


async def take(stream, count):
    messages = stream.__aiter__()
    received = []
    try:
        async for message in messages:
            received.append(message)
            if len(received) == count:
                break
    finally:
        await messages.aclose()
    return received


async def run_until(coro, condition, timeout=2.0):
    task = asyncio.create_task(coro)
    for _ in range(int(timeout / 0.01)):
        if condition() or task.done():
            break
        await asyncio.sleep(0.01)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class DeviceQueueTests(unittest.TestCase):
    def setUp(self):
        self.queue = DeviceQueue()
        self.a = QueueEntry(MAC_A, AddressType.PUBLIC)
        self.b = QueueEntry(MAC_B, AddressType.RANDOM)

    def test_dequeue_empty_returns_none(self):
        self.assertIsNone(self.queue.dequeue())
        self.assertEqual(len(self.queue), 0)
        self.assertFalse(self.queue)

    def test_duplicate_is_ignored(self):
        self.assertTrue(self.queue.enqueue(self.a))
        self.assertFalse(self.queue.enqueue(self.a))
        self.assertEqual(self.queue.dequeue(), self.a)
        self.assertIsNone(self.queue.dequeue())

    def test_newest_first(self):
        self.queue.enqueue(self.a)
        self.queue.enqueue(self.b)
        self.assertEqual(self.queue.dequeue(), self.b)
        self.assertEqual(self.queue.dequeue(), self.a)

    def test_device_can_requeue_after_dequeue(self):
        self.queue.enqueue(self.a)
        self.queue.dequeue()
        self.assertNotIn(MAC_A, self.queue)
        self.assertTrue(self.queue.enqueue(self.a))
        self.assertIn(MAC_A, self.queue)

    def test_never_more_than_one_entry_per_mac(self):
        macs = [MAC_A, MAC_B, MAC_A, MAC_C, MAC_B, MAC_A, MAC_A, MAC_C]
        for i, mac in enumerate(macs):
            self.queue.enqueue(QueueEntry(mac, AddressType.PUBLIC))
            if i == 4:
                self.queue.dequeue()
            pending = list(self.queue._items)
            self.assertEqual(len(pending), len({e.mac for e in pending}))

        drained = []
        entry = self.queue.dequeue()
        while entry is not None:
            drained.append(entry.mac)
            entry = self.queue.dequeue()
        self.assertEqual(len(drained), len(set(drained)))

    def test_same_mac_different_address_type_is_still_duplicate(self):
        self.queue.enqueue(self.a)
        self.assertFalse(self.queue.enqueue(QueueEntry(MAC_A, AddressType.RANDOM)))
        self.assertEqual(self.queue.dequeue().addr_type, AddressType.PUBLIC)


class ScanEventTests(unittest.TestCase):
    def test_parse(self):
        event = ScanEvent.from_json(scan_payload(MAC_A, name="Sleepace Z2", rssi=-37))
        self.assertEqual(event.mac, MAC_A)
        self.assertEqual(event.addr_type, AddressType.PUBLIC)
        self.assertEqual(event.name, "Sleepace Z2")
        self.assertEqual(event.rssi, -37)
        self.assertEqual(event.evt_type, 4)
        self.assertEqual(event.to_entry(), QueueEntry(MAC_A, AddressType.PUBLIC))

    def test_only_first_address_is_used(self):
        event = ScanEvent.from_json(scan_payload(MAC_A, "random", extra_addrs=[MAC_B, MAC_C]))
        self.assertEqual(event.mac, MAC_A)
        self.assertEqual(event.addr_type, AddressType.RANDOM)

    def test_optional_fields_missing(self):
        event = ScanEvent.from_payload({"bdaddrs": [{"bdaddr": MAC_A, "bdaddrType": "public"}]})
        self.assertIsNone(event.name)
        self.assertIsNone(event.rssi)

    def test_malformed(self):
        bad = [
            "not json",
            "[]",
            json.dumps({"name": "x"}),
            json.dumps({"bdaddrs": []}),
            json.dumps({"bdaddrs": [{"bdaddr": MAC_A}]}),
            json.dumps({"bdaddrs": [{"bdaddr": MAC_A, "bdaddrType": "static"}]}),
            json.dumps({"bdaddrs": ["ED:47:B0:D3:A9:C8"]}),
        ]
        for raw in bad:
            with self.subTest(raw=raw):
                with self.assertRaises(ScanEventError):
                    ScanEvent.from_json(raw)

    def test_address_must_be_a_non_empty_string(self):
        for mac in (12345, None, ["x"], {"a": 1}, ""):
            with self.subTest(mac=mac):
                with self.assertRaises(ScanEventError):
                    ScanEvent.from_json(scan_payload(mac))


class ConfigTests(unittest.TestCase):
    def reload_with(self, env):
        try:
            with mock.patch.dict(os.environ, env):
                return importlib.reload(config).LOG_LEVEL
        finally:
            importlib.reload(config)

    def test_log_level_from_env(self):
        self.assertEqual(self.reload_with({"BLE_GATEWAY_LOG_LEVEL": "debug"}), "DEBUG")

    def test_unknown_log_level_falls_back_to_info(self):
        self.assertEqual(self.reload_with({"BLE_GATEWAY_LOG_LEVEL": "chatty"}), "INFO")


class FakeGateway:
    """Just enough of the router's local API to exercise the client."""

    def __init__(self):
        self.scan_messages = []
        self.notify_messages = []
        self.busy = set()
        self.connect_requests = []
        self.writes = []
        self.scan_queries = []
        self.scan_status = 200

    def app(self):
        app = web.Application()
        app.router.add_get("/gap/nodes", self.scan)
        app.router.add_post("/gap/nodes/{mac}/connection", self.connect)
        app.router.add_get("/gatt/nodes/{mac}/handle/{handle}/value/{value}", self.write)
        app.router.add_get("/gatt/nodes", self.notify)
        return app

    async def _stream(self, request, messages):
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(b":ok\n\n")
        for message in messages:
            await response.write(f"data: {message}\n\n".encode())
        return response

    async def scan(self, request):
        self.scan_queries.append(dict(request.query))
        if self.scan_status != 200:
            return web.Response(status=self.scan_status, text="scan off")
        return await self._stream(request, self.scan_messages)

    async def notify(self, request):
        return await self._stream(request, self.notify_messages)

    async def connect(self, request):
        mac = request.match_info["mac"]
        self.connect_requests.append((mac, await request.json()))
        if mac in self.busy:
            return web.Response(status=500, text="chip busy")
        return web.Response(text="OK")

    async def write(self, request):
        info = request.match_info
        self.writes.append((info["mac"], int(info["handle"]), info["value"]))
        return web.Response(text="OK")


class GatewayTestCase(AioHTTPTestCase):
    async def get_application(self):
        self.gateway = FakeGateway()
        return self.gateway.app()

    @property
    def host(self):
        return str(self.server.make_url("/")).rstrip("/")

    def gateway_client(self):
        return GatewayClient(self.client.session, self.host)


class GatewayClientTests(GatewayTestCase):
    async def test_connect_sends_timeout_and_type(self):
        body = await self.gateway_client().connect(MAC_A, AddressType.RANDOM, 5000)
        self.assertEqual(body, "OK")
        self.assertEqual(self.gateway.connect_requests, [(MAC_A, {"timeout": 5000, "type": "random"})])

    async def test_connect_failure_keeps_body(self):
        self.gateway.busy.add(MAC_A)
        with self.assertRaises(GatewayRequestError) as ctx:
            await self.gateway_client().connect(MAC_A, AddressType.PUBLIC)
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(ctx.exception.body, "chip busy")

    async def test_enable_notifications_writes_0200_to_handle_17(self):
        await self.gateway_client().enable_notifications(MAC_A)
        self.assertEqual(self.gateway.writes, [(MAC_A, 17, "0200")])

    async def test_scan_stream_query(self):
        self.gateway.scan_messages = [scan_payload(MAC_A)]
        stream = self.gateway_client().scan_stream(filter_rssi=-75, filter_name="Cassia*", active=True)
        messages = await asyncio.wait_for(take(stream, 1), timeout=2)

        self.assertEqual(ScanEvent.from_json(messages[0].data).mac, MAC_A)
        self.assertEqual(self.gateway.scan_queries, [
            {"event": "1", "filter_rssi": "-75", "filter_name": "Cassia*", "active": "1"}
        ])

    async def test_stream_yields_messages(self):
        self.gateway.notify_messages = ["first", "second"]
        stream = self.gateway_client().notification_stream()
        messages = await asyncio.wait_for(take(stream, 2), timeout=2)
        self.assertEqual([m.data for m in messages], ["first", "second"])
        self.assertEqual(messages[0].event, "message")

    async def test_stream_is_single_use(self):
        stream = self.gateway_client().notification_stream()
        messages = stream.__aiter__()
        with self.assertRaises(StreamError):
            stream.__aiter__()
        await messages.aclose()

    async def test_http_error_raises_stream_error(self):
        self.gateway.scan_status = 403
        stream = self.gateway_client().scan_stream()
        with self.assertRaises(StreamError) as ctx:
            await asyncio.wait_for(take(stream, 1), timeout=2)
        self.assertIn("403", str(ctx.exception))


class ListenerTests(GatewayTestCase):
    async def test_scan_listener_queues_unique_devices(self):
        self.gateway.scan_messages = [
            scan_payload(MAC_A),
            scan_payload(MAC_B, "random"),
            scan_payload(MAC_A),
            "garbage",
        ]
        queue = DeviceQueue()
        listener = ScanListener(self.gateway_client().scan_stream(), queue)

        with self.assertLogs("Scan", level="WARNING") as logs:
            await run_until(listener.run(), lambda: listener.seen + listener.skipped >= 4)

        self.assertEqual(len(queue), 2)
        self.assertEqual((listener.seen, listener.skipped), (3, 1))
        self.assertEqual(queue.dequeue(), QueueEntry(MAC_B, AddressType.RANDOM))
        self.assertEqual(queue.dequeue(), QueueEntry(MAC_A, AddressType.PUBLIC))
        self.assertTrue(any("Skipping scan event" in line for line in logs.output))

    async def test_scan_listener_skips_non_string_addresses(self):
        self.gateway.scan_messages = [
            scan_payload(12345),
            scan_payload(["x"]),
            scan_payload(""),
            scan_payload(MAC_A),
        ]
        queue = DeviceQueue()
        listener = ScanListener(self.gateway_client().scan_stream(), queue)

        with self.assertLogs("Scan", level="WARNING"):
            await run_until(listener.run(), lambda: listener.seen + listener.skipped >= 4)

        self.assertEqual(listener.skipped, 3)
        self.assertEqual(queue.dequeue(), QueueEntry(MAC_A, AddressType.PUBLIC))
        self.assertIsNone(queue.dequeue())

    async def test_scan_listener_logs_http_error(self):
        self.gateway.scan_status = 403
        queue = DeviceQueue()
        listener = ScanListener(self.gateway_client().scan_stream(), queue)
        with self.assertLogs("Scan", level="ERROR") as logs:
            await asyncio.wait_for(listener.run(), timeout=2)
        self.assertIn("403", logs.output[0])
        self.assertFalse(queue)

    async def test_scan_listener_logs_connection_error(self):
        stream = EventStream(self.client.session, "http://127.0.0.1:1/gap/nodes", max_connect_retry=0)
        with self.assertLogs("Scan", level="ERROR") as logs:
            await asyncio.wait_for(ScanListener(stream, DeviceQueue()).run(), timeout=5)
        self.assertIn("open scan sse failed", logs.output[0])

    async def test_notification_listener_logs_connection_error(self):
        stream = EventStream(self.client.session, "http://127.0.0.1:1/gatt/nodes", max_connect_retry=0)
        with self.assertLogs("Notify", level="ERROR") as logs:
            await asyncio.wait_for(NotificationListener(stream).run(), timeout=5)
        self.assertIn("open notify sse failed", logs.output[0])

    async def test_notification_listener_logs_every_message(self):
        self.gateway.notify_messages = [
            json.dumps({"id": MAC_A, "handle": 16, "value": "0102"}),
            json.dumps({"id": MAC_B, "handle": 16, "value": "0304"}),
        ]
        listener = NotificationListener(self.gateway_client().notification_stream())

        def received(output):
            return [line for line in output if "received notify sse message" in line]

        with self.assertLogs("Notify", level="INFO") as logs:
            await run_until(listener.run(), lambda: len(received(logs.output)) >= 2)

        lines = received(logs.output)
        self.assertEqual(len(lines), 2)
        self.assertIn("0102", lines[0])


class ScanMessageHandlingTests(unittest.TestCase):
    def test_unexpected_error_is_logged_and_next_message_handled(self):
        queue = mock.Mock(spec=DeviceQueue)
        queue.enqueue.side_effect = [RuntimeError("boom"), True]
        listener = ScanListener(mock.Mock(spec=EventStream), queue)

        with self.assertLogs("Scan", level="ERROR") as logs:
            listener.handle_message(scan_payload(MAC_B))
            listener.handle_message(scan_payload(MAC_A))

        self.assertIn("boom", logs.output[0])
        self.assertEqual(listener.skipped, 1)
        queue.enqueue.assert_called_with(QueueEntry(MAC_A, AddressType.PUBLIC))


class FakeClient:
    def __init__(self, failing=(), failing_writes=()):
        self.failing = set(failing)
        self.failing_writes = set(failing_writes)
        self.calls = []

    async def connect(self, mac, addr_type, timeout_ms=5000):
        self.calls.append(("connect", mac))
        if mac in self.failing:
            raise GatewayRequestError(500, "chip busy")
        return "OK"

    async def enable_notifications(self, mac, handle=17):
        self.calls.append(("write", mac, handle))
        if mac in self.failing_writes:
            raise GatewayRequestError(500, "write failed")
        return "OK"


class RecordingDrainLoop(ConnectDrainLoop):
    def __init__(self, *args, passes=3, **kwargs):
        super().__init__(*args, **kwargs)
        self.passes = passes
        self.pass_times = []

    async def drain_once(self):
        self.pass_times.append(asyncio.get_running_loop().time())
        processed = await super().drain_once()
        if len(self.pass_times) >= self.passes:
            self.stop()
        return processed


class ConnectDrainLoopTests(unittest.IsolatedAsyncioTestCase):
    def fill(self, queue, *macs):
        for mac in macs:
            queue.enqueue(QueueEntry(mac, AddressType.PUBLIC))

    async def test_failed_connect_moves_on(self):
        queue = DeviceQueue()
        self.fill(queue, MAC_A, MAC_B, MAC_C)
        client = FakeClient(failing=[MAC_B])
        loop = ConnectDrainLoop(client, queue, interval=0.01)

        with self.assertLogs("Dev-AA:01", level="ERROR") as logs:
            processed = await loop.drain_once()

        self.assertEqual(processed, 3)
        self.assertIn("chip busy", logs.output[0])
        self.assertEqual(client.calls, [
            ("connect", MAC_C), ("write", MAC_C, 17),
            ("connect", MAC_B),
            ("connect", MAC_A), ("write", MAC_A, 17),
        ])
        self.assertEqual((loop.connected, loop.failed), (2, 1))
        self.assertFalse(queue)

    async def test_non_string_address_does_not_escape(self):
        queue = DeviceQueue()
        self.fill(queue, MAC_A, 12345)
        loop = ConnectDrainLoop(FakeClient(failing=[12345]), queue)

        with self.assertLogs("Dev-12345", level="ERROR"):
            processed = await loop.drain_once()

        self.assertEqual(processed, 2)
        self.assertEqual((loop.connected, loop.failed), (1, 1))

    async def test_failed_write_is_logged(self):
        queue = DeviceQueue()
        self.fill(queue, MAC_A)
        loop = ConnectDrainLoop(FakeClient(failing_writes=[MAC_A]), queue)
        with self.assertLogs("Dev-A9:C8", level="ERROR") as logs:
            self.assertFalse(await loop.process(queue.dequeue()))
        self.assertIn("write failed", logs.output[0])

    async def test_success_logs_connect_result(self):
        loop = ConnectDrainLoop(FakeClient(), DeviceQueue())
        with self.assertLogs("Dev-A9:C8", level="INFO") as logs:
            self.assertTrue(await loop.process(QueueEntry(MAC_A, AddressType.PUBLIC)))
        self.assertIn(f"connect {MAC_A} OK", logs.output[0])

    async def test_idle_wait_between_passes(self):
        interval = 0.1
        loop = RecordingDrainLoop(FakeClient(), DeviceQueue(), interval=interval, passes=3)
        await asyncio.wait_for(loop.run(), timeout=5)

        self.assertEqual(len(loop.pass_times), 3)
        for earlier, later in zip(loop.pass_times, loop.pass_times[1:]):
            self.assertGreaterEqual(later - earlier, interval * 0.99)

    async def test_devices_queued_while_idle_are_picked_up(self):
        queue = DeviceQueue()
        client = FakeClient()
        loop = ConnectDrainLoop(client, queue, interval=0.05)
        task = asyncio.create_task(loop.run())

        await asyncio.sleep(0.01)
        self.fill(queue, MAC_A)
        for _ in range(100):
            if loop.connected:
                break
            await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(task, timeout=1)

        self.assertEqual(loop.connected, 1)
        self.assertFalse(queue)

    async def test_stop_while_idle_returns_promptly(self):
        loop = ConnectDrainLoop(FakeClient(), DeviceQueue(), interval=60)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.01)
        loop.stop()
        await asyncio.wait_for(task, timeout=1)
        self.assertTrue(loop.stopping)

    async def test_stop_leaves_remaining_devices_queued(self):
        queue = DeviceQueue()
        self.fill(queue, MAC_A, MAC_B)
        loop = ConnectDrainLoop(FakeClient(), queue)
        loop.stop()
        self.assertEqual(await loop.drain_once(), 0)
        self.assertEqual(len(queue), 2)


class DrainLoopOutsideEventLoopTests(unittest.TestCase):
    def test_loop_built_before_asyncio_run(self):
        queue = DeviceQueue()
        queue.enqueue(QueueEntry(MAC_A, AddressType.PUBLIC))
        loop = ConnectDrainLoop(FakeClient(), queue, interval=60)

        async def main():
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.01)
            loop.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(main())
        self.assertEqual(loop.connected, 1)


class BridgeTests(GatewayTestCase):
    async def test_scan_to_connect(self):
        self.gateway.scan_messages = [scan_payload(MAC_A), scan_payload(MAC_B, "random"), scan_payload(MAC_A)]
        self.gateway.notify_messages = ["hello"]
        self.gateway.busy.add(MAC_B)

        bridge = Bridge(self.host, drain_interval=0.05, session=self.client.session)
        task = asyncio.create_task(bridge.run())
        for _ in range(200):
            if len(self.gateway.connect_requests) >= 2:
                break
            await asyncio.sleep(0.01)
        bridge.stop()
        await asyncio.wait_for(task, timeout=2)

        connected = sorted(mac for mac, _ in self.gateway.connect_requests)
        self.assertEqual(connected, sorted([MAC_A, MAC_B]))
        self.assertEqual(self.gateway.writes, [(MAC_A, 17, "0200")])
        self.assertEqual((bridge.drain_loop.connected, bridge.drain_loop.failed), (1, 1))
        self.assertFalse(self.client.session.closed)

    async def test_listener_crash_is_logged(self):
        bridge = Bridge(self.host, drain_interval=0.05, session=self.client.session)
        with mock.patch.object(ScanListener, "run", side_effect=RuntimeError("scan died")):
            with self.assertLogs("Bridge", level="ERROR") as logs:
                task = asyncio.create_task(bridge.run())
                await asyncio.sleep(0.05)
                bridge.stop()
                await asyncio.wait_for(task, timeout=2)

        self.assertTrue(any("scan died" in line for line in logs.output))
