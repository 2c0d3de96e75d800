"""Temporary key registry.

A temp key is a caller principal that may manage a freshly registered anchor
for a short while, with the rights of the device it was registered with.

Entries are keyed by (credential, anchor) and indexed by (anchor, device key)
so that removing or replacing a device drops every temp key bound to it.

Expiry is checked on read. The FIFO expiry queue exists only so that
`prune_expired` can reclaim memory in bounded steps; it is never needed for
correctness.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Set, Tuple

from .principal import Principal

logger = logging.getLogger("identity_gateway")

TEMP_KEY_TTL_SECONDS = 600


@dataclass(frozen=True)
class TempKeyEntry:
    credential: Principal
    anchor: int
    device_key: bytes
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class TempKeyRegistry:
    def __init__(self, ttl_seconds: int = TEMP_KEY_TTL_SECONDS):
        self.ttl_seconds = int(ttl_seconds)
        self._lock = threading.RLock()
        self._entries: Dict[Tuple[Principal, int], TempKeyEntry] = {}
        self._by_device: Dict[Tuple[int, bytes], Set[Principal]] = {}
        # (expires_at, credential, anchor) in insertion order; entries share one TTL
        self._expiry_queue: Deque[Tuple[float, Principal, int]] = deque()

    def insert(self, credential: Principal, anchor: int, device_key: bytes, now: float) -> TempKeyEntry:
        """Bind `credential` to (anchor, device_key) until now + TTL.

        An existing entry for the same (credential, anchor) is overwritten.
        """
        entry = TempKeyEntry(
            credential=credential,
            anchor=int(anchor),
            device_key=bytes(device_key),
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self._remove((credential, entry.anchor))
            self._entries[(credential, entry.anchor)] = entry
            self._by_device.setdefault((entry.anchor, entry.device_key), set()).add(credential)
            self._expiry_queue.append((entry.expires_at, credential, entry.anchor))
        return entry

    def get(self, credential: Principal, anchor: int) -> Optional[TempKeyEntry]:
        with self._lock:
            return self._entries.get((credential, int(anchor)))

    def resolve(
        self,
        credential: Principal,
        anchor: int,
        now: float,
        device_exists: Optional[Callable[[bytes], bool]] = None,
    ) -> Optional[bytes]:
        """Device key bound to `credential` on `anchor`, if the binding is live.

        `device_exists` lets the caller confirm the bound device is still
        registered on the anchor; a missing device yields None.
        """
        with self._lock:
            entry = self._entries.get((credential, int(anchor)))
        if entry is None or not entry.is_live(now):
            return None
        if device_exists is not None and not device_exists(entry.device_key):
            return None
        return entry.device_key

    def invalidate_for_device(self, anchor: int, device_key: bytes) -> int:
        """Drop every entry bound to (anchor, device_key). Returns the number removed."""
        with self._lock:
            credentials = self._by_device.pop((int(anchor), bytes(device_key)), set())
            for credential in credentials:
                self._entries.pop((credential, int(anchor)), None)
        if credentials:
            logger.info("revoked %d temp key(s) on anchor %d after device change", len(credentials), int(anchor))
        return len(credentials)

    def prune_expired(self, now: float, limit: int = 100) -> int:
        """Remove up to `limit` expired entries, oldest first."""
        removed = 0
        with self._lock:
            while self._expiry_queue and removed < limit:
                expires_at, credential, anchor = self._expiry_queue[0]
                if expires_at > now:
                    break
                self._expiry_queue.popleft()
                entry = self._entries.get((credential, anchor))
                # Skip queue items whose entry was revoked or re-inserted since.
                if entry is None or entry.expires_at != expires_at:
                    continue
                self._remove((credential, anchor))
                removed += 1
        return removed

    def _remove(self, key: Tuple[Principal, int]) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        bucket = self._by_device.get((entry.anchor, entry.device_key))
        if bucket is not None:
            bucket.discard(entry.credential)
            if not bucket:
                del self._by_device[(entry.anchor, entry.device_key)]

    def count(self) -> int:
        """Number of stored entries, live or not yet pruned."""
        with self._lock:
            return len(self._entries)
