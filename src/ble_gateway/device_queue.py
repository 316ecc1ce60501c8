from typing import List, Optional, Set

from .models import QueueEntry


class DeviceQueue:
    """Pending connection attempts, at most one per device.

    The router can only connect one device at a time (otherwise it answers
    "chip busy"), so scan results are parked here and connected one by one.
    Scanning reports the same device many times in a short window, repeated
    MACs are dropped while the device is still waiting.

    Entries come out newest first. Not thread safe, only touch it from the
    event loop.
    """

    def __init__(self):
        self._items: List[QueueEntry] = []
        self._pending: Set[str] = set()

    def enqueue(self, entry: QueueEntry) -> bool:
        if entry.mac in self._pending:
            return False
        self._items.append(entry)
        self._pending.add(entry.mac)
        return True

    def dequeue(self) -> Optional[QueueEntry]:
        if not self._items:
            return None
        entry = self._items.pop()
        self._pending.discard(entry.mac)
        return entry

    def __len__(self):
        return len(self._items)

    def __bool__(self):
        return bool(self._items)

    def __contains__(self, mac):
        return mac in self._pending
