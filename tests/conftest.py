"""Shared pytest fixtures for groupshare-sync tests."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from groupshare_sync.core.retry import RetryPolicy
from groupshare_sync.remote.filesystem import FolderRemoteStore
from groupshare_sync.store.memory import MemoryLocalStore
from groupshare_sync.sync.engine import SyncOrchestrator
from groupshare_sync.sync.models import ChangeLogEntry, ChangeType, EntityType
from groupshare_sync.sync.remote import GroupRemote
from groupshare_sync.sync.resolver import ConflictResolver
from groupshare_sync.sync.state import DeviceIdentity, SyncState
from groupshare_sync.sync.tracker import ChangeTracker

GROUP_ID = "band-1"
GROUP_NAME = "Friday Band"


class Clock:
    """Deterministic millisecond clock; every call moves time forward."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


async def no_sleep(_delay: float) -> None:
    return None


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    """Retry policy that never actually waits."""
    return RetryPolicy(max_attempts=max_attempts, sleep=no_sleep)


def make_entry(
    change_id: str,
    timestamp: int,
    *,
    device_id: str = "dev-x",
    entity_type: EntityType = EntityType.SONG,
    entity_id: str = "s1",
    change_type: ChangeType = ChangeType.UPDATE,
    metadata: dict[str, str] | None = None,
    synced: bool = False,
) -> ChangeLogEntry:
    """Build a ChangeLogEntry with sensible defaults."""
    meta = {"groupId": GROUP_ID}
    meta.update(metadata or {})
    return ChangeLogEntry(
        change_id=change_id,
        timestamp=timestamp,
        device_id=device_id,
        device_name=device_id.upper(),
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_id,
        change_type=change_type,
        checksum="0" * 64,
        description=f"{change_type.value.lower()} {entity_id}",
        metadata=meta,
        synced=synced,
    )


@dataclass
class Device:
    """One simulated device: local store, tracker and orchestrator."""

    name: str
    store: MemoryLocalStore
    state: SyncState
    tracker: ChangeTracker
    orchestrator: SyncOrchestrator

    async def sync(self, group_id: str = GROUP_ID):
        result = await self.orchestrator.sync_group(
            group_id, group_name=GROUP_NAME
        )
        return result.unwrap()

    def create_group(self, member_id: str = "m1") -> None:
        now = 1_700_000_000_000
        self.tracker.put(
            GROUP_ID,
            EntityType.GROUP,
            {"id": GROUP_ID, "name": GROUP_NAME, "created": now, "updated": now},
        )
        self.tracker.put(
            GROUP_ID,
            EntityType.MEMBER,
            {
                "id": member_id,
                "groupId": GROUP_ID,
                "name": "Alex",
                "role": "admin",
                "joined": now,
            },
        )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def make_device(tmp_path: Path, remote_root: Path, clock: Clock):
    """Factory building devices that share one remote folder and one clock."""

    def _make(name: str, remote_store=None, **orchestrator_kwargs) -> Device:
        base = tmp_path / name
        store = MemoryLocalStore()
        state = SyncState(base / "state")
        device = DeviceIdentity(f"device-{name}", name)
        tracker = ChangeTracker(store, device, clock=clock)
        remote = GroupRemote(
            remote_store or FolderRemoteStore(remote_root), fast_retry()
        )
        orchestrator_kwargs.setdefault("files_dir", base / "files")
        orchestrator = SyncOrchestrator(
            store,
            remote,
            tracker,
            state,
            ConflictResolver(clock=clock),
            clock=clock,
            **orchestrator_kwargs,
        )
        return Device(name, store, state, tracker, orchestrator)

    return _make
