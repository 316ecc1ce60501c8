import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .exceptions import ScanEventError


class AddressType(str, Enum):
    PUBLIC = "public"
    RANDOM = "random"


@dataclass(frozen=True)
class QueueEntry:
    mac: str
    addr_type: AddressType

    def __str__(self):
        return f"{self.mac} ({self.addr_type.value})"


@dataclass(frozen=True)
class ScanEvent:
    """One advertisement reported by the router's scan stream.

    Payload looks like:
        {"bdaddrs":[{"bdaddr":"ED:47:B0:D3:A9:C8","bdaddrType":"public"}],
         "scanData":"0C09536C656570616365205A32","name":"Sleepace Z2",
         "rssi":-37,"evt_type":4}

    Only the first entry of ``bdaddrs`` is used, any further addresses are
    dropped.
    """

    mac: str
    addr_type: AddressType
    name: Optional[str] = None
    rssi: Optional[int] = None
    evt_type: Optional[int] = None
    scan_data: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str) -> "ScanEvent":
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise ScanEventError(f"Invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ScanEventError(f"Expected an object, got {type(payload).__name__}")
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: dict) -> "ScanEvent":
        addrs = payload.get("bdaddrs")
        if not addrs or not isinstance(addrs, list):
            raise ScanEventError("Missing bdaddrs")

        first = addrs[0]
        try:
            mac = first["bdaddr"]
            addr_type = AddressType(first["bdaddrType"])
        except (KeyError, TypeError) as e:
            raise ScanEventError(f"Malformed bdaddrs entry: {first!r}") from e
        except ValueError as e:
            raise ScanEventError(f"Unknown address type: {first.get('bdaddrType')!r}") from e

        if not isinstance(mac, str) or not mac:
            raise ScanEventError(f"Invalid address: {mac!r}")

        return cls(
            mac=mac,
            addr_type=addr_type,
            name=payload.get("name"),
            rssi=payload.get("rssi"),
            evt_type=payload.get("evt_type"),
            scan_data=payload.get("scanData"),
        )

    def to_entry(self) -> QueueEntry:
        return QueueEntry(self.mac, self.addr_type)


@dataclass(frozen=True)
class StreamMessage:
    data: str
    event: str = "message"
    id: Optional[str] = None
