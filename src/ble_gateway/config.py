import logging
import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Router address, local API must be switched on in the router settings page
HOST = os.environ.get("BLE_GATEWAY_HOST", "http://192.168.0.38")

# Scan filters
SCAN_FILTER_RSSI = int(os.environ.get("BLE_GATEWAY_FILTER_RSSI", "-75"))
SCAN_FILTER_NAME = os.environ.get("BLE_GATEWAY_FILTER_NAME", "Cassia*")
SCAN_ACTIVE = _env_bool("BLE_GATEWAY_ACTIVE_SCAN", True)  # active scan returns device names

# Connection settings
CONNECT_TIMEOUT_MS = 5000
NOTIFY_HANDLE = 17  # CCCD of the notifying characteristic
NOTIFY_ENABLE_VALUE = "0200"

# Queue check interval when idle (in secs)
DRAIN_INTERVAL = float(os.environ.get("BLE_GATEWAY_DRAIN_INTERVAL", "5.0"))

# Event stream reconnects, handled by aiohttp-sse-client (delay in secs)
STREAM_MAX_RETRY = 5
STREAM_RECONNECT_TIME = 5.0

# Bridge restart delay after a crash (in secs)
RESTART_DELAY = 5

LOG_LEVEL = os.environ.get("BLE_GATEWAY_LOG_LEVEL", "INFO").upper()
if not isinstance(logging.getLevelName(LOG_LEVEL), int):
    LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"
