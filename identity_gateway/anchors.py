"""
Anchor store.

Persistent mapping from anchor number to its ordered device list, backed by
SQLite. Device removal and replacement call into the temp key registry
before returning, so a temp key bound to a device never outlives it.

Storage Properties:
- Anchor numbers are allocated sequentially from a fixed range
- Anchor creation and its first device are written in one transaction
- Devices are unique by public key within an anchor
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .crypto import key_fingerprint
from .errors import (
    IDG_E_ANCHOR_NOT_FOUND,
    IDG_E_BAD_REQUEST,
    IDG_E_DEVICE_EXISTS,
    IDG_E_DEVICE_NOT_FOUND,
    identity_error,
)
from .principal import Principal
from .temp_keys import TempKeyRegistry

logger = logging.getLogger("identity_gateway")

PURPOSES = ("authentication", "recovery")
KEY_TYPES = ("unknown", "platform", "cross_platform", "seed_phrase")
PROTECTIONS = ("unprotected", "protected")


@dataclass(frozen=True)
class Device:
    """A public-key credential registered on an anchor."""
    pubkey: bytes
    alias: str
    credential_id: Optional[bytes] = None
    purpose: str = "authentication"
    key_type: str = "unknown"
    protection: str = "unprotected"
    origin: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.pubkey:
            raise ValueError("device pubkey must be non-empty")
        if self.purpose not in PURPOSES:
            raise ValueError(f"invalid device purpose: {self.purpose!r}")
        if self.key_type not in KEY_TYPES:
            raise ValueError(f"invalid key type: {self.key_type!r}")
        if self.protection not in PROTECTIONS:
            raise ValueError(f"invalid protection: {self.protection!r}")
        object.__setattr__(self, "pubkey", bytes(self.pubkey))

    def principal(self) -> Principal:
        return Principal.self_authenticating(self.pubkey)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pubkey": self.pubkey.hex(),
            "alias": self.alias,
            "credential_id": self.credential_id.hex() if self.credential_id else None,
            "purpose": self.purpose,
            "key_type": self.key_type,
            "protection": self.protection,
            "origin": self.origin,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        credential_id = data.get("credential_id")
        return cls(
            pubkey=bytes.fromhex(data["pubkey"]),
            alias=str(data.get("alias", "")),
            credential_id=bytes.fromhex(credential_id) if credential_id else None,
            purpose=data.get("purpose", "authentication"),
            key_type=data.get("key_type", "unknown"),
            protection=data.get("protection", "unprotected"),
            origin=data.get("origin"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class AnchorInfo:
    anchor: int
    devices: List[Device]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anchor": self.anchor,
            "created_at": self.created_at,
            "devices": [d.to_dict() for d in self.devices],
        }


class AnchorStore:
    """SQLite-backed anchor and device storage."""

    def __init__(
        self,
        db_path: str = ":memory:",
        range_start: int = 10_000,
        range_end: int = 1_010_000,
        temp_keys: Optional[TempKeyRegistry] = None,
    ):
        if range_end < range_start:
            raise ValueError("range_end must not be below range_start")
        self.db_path = db_path
        self.range_start = int(range_start)
        self.range_end = int(range_end)
        self.temp_keys = temp_keys
        self._lock = threading.RLock()
        # One long-lived connection: ":memory:" databases vanish with their connection.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_db()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Serialized transaction: commits on success, rolls back on error."""
        with self._lock:
            with self._conn:
                yield self._conn

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = FULL")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS anchors (
                anchor INTEGER PRIMARY KEY,
                created_at REAL NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS devices (
                anchor INTEGER NOT NULL REFERENCES anchors(anchor),
                position INTEGER NOT NULL,
                pubkey BLOB NOT NULL,
                alias TEXT NOT NULL,
                credential_id BLOB,
                purpose TEXT NOT NULL,
                key_type TEXT NOT NULL,
                protection TEXT NOT NULL,
                origin TEXT,
                metadata_json TEXT NOT NULL,
                PRIMARY KEY (anchor, pubkey)
            )
            """)

            # Allocation cursor, persisted so restarts never reuse a number.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
            """)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ---------------------------
    # Anchors
    # ---------------------------

    def _next_anchor(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM meta WHERE name = 'next_anchor'").fetchone()
        return int(row[0]) if row else self.range_start

    def has_space(self) -> bool:
        with self._db() as conn:
            return self._next_anchor(conn) < self.range_end

    def create_anchor(self, device: Device, now: float) -> Optional[int]:
        """Allocate a new anchor holding `device` as its only device.

        Returns None when the anchor range is exhausted.
        """
        with self._db() as conn:
            anchor = self._next_anchor(conn)
            if anchor >= self.range_end:
                return None
            conn.execute(
                "INSERT INTO meta (name, value) VALUES ('next_anchor', ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
                (anchor + 1,),
            )
            conn.execute("INSERT INTO anchors (anchor, created_at) VALUES (?, ?)", (anchor, float(now)))
            self._insert_device(conn, anchor, 0, device)
        logger.info("created anchor %d with device %s", anchor, key_fingerprint(device.pubkey))
        return anchor

    def anchor_exists(self, anchor: int) -> bool:
        with self._db() as conn:
            row = conn.execute("SELECT 1 FROM anchors WHERE anchor = ?", (int(anchor),)).fetchone()
            return row is not None

    def anchor_count(self) -> int:
        with self._db() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM anchors").fetchone()[0])

    def get_anchor(self, anchor: int) -> AnchorInfo:
        with self._db() as conn:
            row = conn.execute("SELECT created_at FROM anchors WHERE anchor = ?", (int(anchor),)).fetchone()
            if row is None:
                raise identity_error(IDG_E_ANCHOR_NOT_FOUND, f"anchor {int(anchor)} not found", http_status=404)
            devices = self._select_devices(conn, int(anchor))
        return AnchorInfo(anchor=int(anchor), devices=devices, created_at=float(row[0]))

    # ---------------------------
    # Devices
    # ---------------------------

    def _insert_device(self, conn: sqlite3.Connection, anchor: int, position: int, device: Device) -> None:
        try:
            conn.execute(
                """
                INSERT INTO devices
                (anchor, position, pubkey, alias, credential_id, purpose, key_type, protection, origin, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (anchor, position, device.pubkey, device.alias, device.credential_id, device.purpose,
                 device.key_type, device.protection, device.origin, json.dumps(device.metadata, sort_keys=True)),
            )
        except sqlite3.IntegrityError as e:
            raise identity_error(
                IDG_E_DEVICE_EXISTS,
                f"device already registered on anchor {anchor}",
                http_status=409,
            ) from e

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> Device:
        pubkey, alias, credential_id, purpose, key_type, protection, origin, metadata_json = row
        return Device(
            pubkey=bytes(pubkey),
            alias=alias,
            credential_id=bytes(credential_id) if credential_id is not None else None,
            purpose=purpose,
            key_type=key_type,
            protection=protection,
            origin=origin,
            metadata=json.loads(metadata_json),
        )

    def _select_devices(self, conn: sqlite3.Connection, anchor: int) -> List[Device]:
        rows = conn.execute(
            """
            SELECT pubkey, alias, credential_id, purpose, key_type, protection, origin, metadata_json
            FROM devices WHERE anchor = ? ORDER BY position
            """,
            (anchor,),
        ).fetchall()
        return [self._row_to_device(r) for r in rows]

    def _require_anchor(self, conn: sqlite3.Connection, anchor: int) -> None:
        if conn.execute("SELECT 1 FROM anchors WHERE anchor = ?", (anchor,)).fetchone() is None:
            raise identity_error(IDG_E_ANCHOR_NOT_FOUND, f"anchor {anchor} not found", http_status=404)

    def _device_position(self, conn: sqlite3.Connection, anchor: int, pubkey: bytes) -> int:
        row = conn.execute(
            "SELECT position FROM devices WHERE anchor = ? AND pubkey = ?",
            (anchor, bytes(pubkey)),
        ).fetchone()
        if row is None:
            raise identity_error(
                IDG_E_DEVICE_NOT_FOUND,
                f"device {key_fingerprint(pubkey)} not found on anchor {anchor}",
                http_status=404,
            )
        return int(row[0])

    def get_devices(self, anchor: int) -> List[Device]:
        with self._db() as conn:
            self._require_anchor(conn, int(anchor))
            return self._select_devices(conn, int(anchor))

    def has_device(self, anchor: int, pubkey: bytes) -> bool:
        with self._db() as conn:
            row = conn.execute(
                "SELECT 1 FROM devices WHERE anchor = ? AND pubkey = ?",
                (int(anchor), bytes(pubkey)),
            ).fetchone()
            return row is not None

    def add_device(self, anchor: int, device: Device) -> None:
        with self._db() as conn:
            self._require_anchor(conn, int(anchor))
            row = conn.execute("SELECT MAX(position) FROM devices WHERE anchor = ?", (int(anchor),)).fetchone()
            position = (int(row[0]) + 1) if row and row[0] is not None else 0
            self._insert_device(conn, int(anchor), position, device)
        logger.info("added device %s to anchor %d", key_fingerprint(device.pubkey), int(anchor))

    def remove_device(self, anchor: int, pubkey: bytes) -> None:
        """Remove a device and revoke temp keys bound to it."""
        with self._lock:
            with self._db() as conn:
                self._require_anchor(conn, int(anchor))
                self._device_position(conn, int(anchor), pubkey)
                conn.execute("DELETE FROM devices WHERE anchor = ? AND pubkey = ?", (int(anchor), bytes(pubkey)))
            if self.temp_keys is not None:
                self.temp_keys.invalidate_for_device(int(anchor), bytes(pubkey))
        logger.info("removed device %s from anchor %d", key_fingerprint(pubkey), int(anchor))

    def replace_device(self, anchor: int, old_pubkey: bytes, new_device: Device) -> None:
        """Swap a device in place and revoke temp keys bound to the old one."""
        with self._lock:
            with self._db() as conn:
                self._require_anchor(conn, int(anchor))
                position = self._device_position(conn, int(anchor), old_pubkey)
                conn.execute("DELETE FROM devices WHERE anchor = ? AND pubkey = ?", (int(anchor), bytes(old_pubkey)))
                self._insert_device(conn, int(anchor), position, new_device)
            if self.temp_keys is not None:
                self.temp_keys.invalidate_for_device(int(anchor), bytes(old_pubkey))
        logger.info(
            "replaced device %s with %s on anchor %d",
            key_fingerprint(old_pubkey), key_fingerprint(new_device.pubkey), int(anchor),
        )
