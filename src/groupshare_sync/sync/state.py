"""Sync state persistence layer.

Manages the JSON state files kept in the state directory:

* ``sync_{group_id}.json`` -- per-group checkpoint (server modification
  time of the newest changelog file seen), last manifest version, and the
  conflicts still waiting for a human together with the remote entries
  they hold back.
* ``device.json`` -- the stable identity of this device.

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Content hashing** -- ``entity_checksum()`` hashes a canonical JSON
  rendering (sorted keys, compact separators, device-local fields
  removed) so every device computes the same digest for the same entity.
* **Dict-based state** -- state is a plain ``dict`` rather than a Pydantic
  model so the orchestrator can mutate it during a session and persist
  once at the end.
"""

from __future__ import annotations

import hashlib
import json
import os
import socket
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .models import LOCAL_ONLY_FIELDS, ChangeLogEntry, SyncConflict

STATE_VERSION = 1


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    device_name: str


class SyncState:
    """Load, save, and query sync state for groups on this device.

    Args:
        state_dir: Directory where state files are stored.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, group_id: str) -> dict:
        """Load sync state from disk.

        Returns:
            The state dict.  If the file does not exist an empty state
            (no checkpoint, nothing pending) is returned.
        """
        path = self._state_path(group_id)
        if not path.exists():
            return {
                "version": STATE_VERSION,
                "last_sync": None,
                "group_id": group_id,
                "checkpoint": None,
                "manifest_version": None,
                "pending_conflicts": [],
                "held_remote": [],
            }
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, group_id: str, state: dict) -> None:
        """Persist sync state to disk atomically.

        The ``last_sync`` field is set to the current UTC ISO 8601 timestamp
        before writing.
        """
        state["last_sync"] = datetime.now(timezone.utc).isoformat()
        self._write_json(self._state_path(group_id), state)

    def _write_json(self, target: Path, payload: dict) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Device identity
    # ------------------------------------------------------------------

    def device_identity(self, device_name: str | None = None) -> DeviceIdentity:
        """Return this device's identity, creating it on first use.

        The id is a random UUID persisted in ``device.json``; an explicit
        *device_name* replaces the stored name.
        """
        path = self._state_dir / "device.json"
        data: dict = {}
        if path.exists():
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        changed = False
        if not data.get("deviceId"):
            data["deviceId"] = str(uuid.uuid4())
            changed = True
        name = device_name or data.get("deviceName") or socket.gethostname()
        if data.get("deviceName") != name:
            data["deviceName"] = name
            changed = True
        if changed:
            self._write_json(path, data)
        return DeviceIdentity(data["deviceId"], data["deviceName"])

    # ------------------------------------------------------------------
    # Checkpoint and pending conflicts
    # ------------------------------------------------------------------

    @staticmethod
    def checkpoint(state: dict) -> int | None:
        return state.get("checkpoint")

    @staticmethod
    def set_checkpoint(state: dict, value: int | None) -> None:
        state["checkpoint"] = value

    @staticmethod
    def pending_conflicts(state: dict) -> list[SyncConflict]:
        return [
            SyncConflict.model_validate(raw)
            for raw in state.get("pending_conflicts", [])
        ]

    @staticmethod
    def held_entries(state: dict) -> list[ChangeLogEntry]:
        return [
            ChangeLogEntry.from_wire(raw) for raw in state.get("held_remote", [])
        ]

    @staticmethod
    def set_pending(
        state: dict,
        conflicts: list[SyncConflict],
        held: list[ChangeLogEntry],
    ) -> None:
        """Replace the pending conflicts and the remote entries they hold."""
        state["pending_conflicts"] = [
            c.model_dump(mode="json", by_alias=True) for c in conflicts
        ]
        seen: set[str] = set()
        held_raw = []
        for entry in held:
            if entry.change_id not in seen:
                seen.add(entry.change_id)
                held_raw.append(entry.to_wire())
        state["held_remote"] = held_raw

    # ------------------------------------------------------------------
    # Content hashing
    # ------------------------------------------------------------------

    @staticmethod
    def canonical_json(snapshot: dict | None) -> str:
        """Canonical rendering used for entity checksums.

        Keys are sorted, separators compact, device-local fields dropped.
        ``None`` (a deleted entity) renders as ``null``.
        """
        if snapshot is not None:
            snapshot = {
                k: v for k, v in snapshot.items() if k not in LOCAL_ONLY_FIELDS
            }
        return json.dumps(
            snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )

    @staticmethod
    def entity_checksum(snapshot: dict | None) -> str:
        """SHA-256 hex digest of ``canonical_json(snapshot)``."""
        text = SyncState.canonical_json(snapshot)
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _state_path(self, group_id: str) -> Path:
        return self._state_dir / f"sync_{group_id}.json"
