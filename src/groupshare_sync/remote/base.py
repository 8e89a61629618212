"""RemoteStore protocol: the shared blob backend the sync engine talks to.

Every operation returns a ``Result`` instead of raising, so that callers
(``GroupRemote`` via ``RetryPolicy``) can tell retryable failures from
fatal ones by the ``SyncError`` subclass in ``Result.error``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..core.result import Result


@dataclass(frozen=True)
class RemoteFile:
    """A file or folder on the remote store.

    Attributes:
        id: Backend-specific identifier, stable for the same name and parent.
        name: Name within the parent folder.
        parent_id: Id of the containing folder (``None`` for the root).
        is_folder: ``True`` for folders.
        size: Content size in bytes (0 for folders).
        checksum: MD5 hex digest of the content, if the backend reports it
            here; ``RemoteStore.metadata`` is the authoritative source.
        modified_time: Server-side modification time in milliseconds.
    """

    id: str
    name: str
    parent_id: str | None
    is_folder: bool = False
    size: int = 0
    checksum: str | None = None
    modified_time: int = 0


@dataclass(frozen=True)
class RemoteMetadata:
    checksum: str | None
    size: int
    modified_time: int = 0


@runtime_checkable
class RemoteStore(Protocol):
    async def authenticate(self) -> Result[None]: ...

    async def upload(
        self, local_path: Path, remote_path: str, parent_folder_id: str | None
    ) -> Result[RemoteFile]: ...

    async def download(self, file_id: str, local_path: Path) -> Result[Path]: ...

    async def list(self, folder_id: str | None) -> Result[list[RemoteFile]]: ...

    async def create_folder(
        self, name: str, parent_id: str | None
    ) -> Result[str]: ...

    async def metadata(self, file_id: str) -> Result[RemoteMetadata]: ...
