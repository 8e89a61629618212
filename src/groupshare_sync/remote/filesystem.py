"""RemoteStore backed by a shared directory.

Useful for mounted network drives and folder-syncing clients, and as the
store the integration tests run two devices against.  File ids are POSIX
paths relative to the root (``""`` is the root itself).  Checksums are
MD5 of the stored bytes, computed by ``metadata()`` and ``upload()`` only;
``list()`` leaves them unset.  Modification times are the file mtime in ms.

OS errors are mapped onto the sync error taxonomy: missing paths become
``EntityNotFoundError``, a full disk ``QuotaExceededError``, an
unreachable root ``AuthenticationError``, everything else
``TransientNetworkError``.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Callable, TypeVar

from ..core.async_utils import run_sync
from ..core.result import Result
from ..errors import (
    AuthenticationError,
    EntityNotFoundError,
    MalformedRequestError,
    QuotaExceededError,
    SyncError,
    TransientNetworkError,
)
from .base import RemoteFile, RemoteMetadata

T = TypeVar("T")
logger = logging.getLogger(__name__)

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def md5_file(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _map_os_error(exc: OSError, operation: str) -> SyncError:
    if isinstance(exc, FileNotFoundError):
        return EntityNotFoundError(
            f"{operation}: {exc.filename or exc}", cause=exc
        )
    if exc.errno in _QUOTA_ERRNOS:
        return QuotaExceededError(f"{operation}: remote store full", cause=exc)
    return TransientNetworkError(f"{operation}: {exc}", cause=exc)


class FolderRemoteStore:
    """Remote store rooted at a local or mounted directory.

    Args:
        root: Directory acting as the remote store root.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    # ------------------------------------------------------------------
    # Path handling
    # ------------------------------------------------------------------

    def _resolve(self, file_id: str | None) -> Path:
        rel = PurePosixPath(file_id or "")
        if rel.is_absolute() or ".." in rel.parts:
            raise MalformedRequestError(f"Invalid remote id: {file_id!r}")
        return self.root.joinpath(*rel.parts)

    @staticmethod
    def _child_id(parent_id: str | None, name: str) -> str:
        if not name or "/" in name or name in (".", ".."):
            raise MalformedRequestError(f"Invalid remote name: {name!r}")
        return f"{parent_id}/{name}" if parent_id else name

    def _describe(self, file_id: str, with_checksum: bool = False) -> RemoteFile:
        path = self._resolve(file_id)
        stat = path.stat()
        parent = str(PurePosixPath(file_id).parent)
        is_folder = path.is_dir()
        return RemoteFile(
            id=file_id,
            name=path.name,
            parent_id=None if parent == "." else parent,
            is_folder=is_folder,
            size=0 if is_folder else stat.st_size,
            checksum=md5_file(path) if with_checksum and not is_folder else None,
            modified_time=stat.st_mtime_ns // 1_000_000,
        )

    async def _run(
        self, operation: str, func: Callable[[], T]
    ) -> Result[T]:
        try:
            return Result.ok(await run_sync(func))
        except SyncError as exc:
            return Result.fail(exc)
        except OSError as exc:
            return Result.fail(_map_os_error(exc, operation))

    # ------------------------------------------------------------------
    # RemoteStore operations
    # ------------------------------------------------------------------

    async def authenticate(self) -> Result[None]:
        if not self.root.is_dir() or not os.access(self.root, os.R_OK | os.W_OK):
            return Result.fail(
                AuthenticationError(f"Remote root not accessible: {self.root}")
            )
        logger.debug("Authenticated against folder store %s", self.root)
        return Result.ok()

    async def upload(
        self, local_path: Path, remote_path: str, parent_folder_id: str | None
    ) -> Result[RemoteFile]:
        def _upload() -> RemoteFile:
            file_id = self._child_id(parent_folder_id, remote_path)
            parent = self._resolve(parent_folder_id)
            if not parent.is_dir():
                raise FileNotFoundError(
                    errno.ENOENT, "Parent folder missing", str(parent)
                )
            fd, tmp_path = tempfile.mkstemp(dir=str(parent), suffix=".part")
            os.close(fd)
            try:
                shutil.copyfile(local_path, tmp_path)
                os.replace(tmp_path, self._resolve(file_id))
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
            return self._describe(file_id, with_checksum=True)

        return await self._run(f"upload {remote_path}", _upload)

    async def download(self, file_id: str, local_path: Path) -> Result[Path]:
        def _download() -> Path:
            source = self._resolve(file_id)
            if not source.is_file():
                raise FileNotFoundError(
                    errno.ENOENT, "No such remote file", file_id
                )
            target = Path(local_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            return target

        return await self._run(f"download {file_id}", _download)

    async def list(self, folder_id: str | None) -> Result[list[RemoteFile]]:
        def _list() -> list[RemoteFile]:
            folder = self._resolve(folder_id)
            if not folder.is_dir():
                raise FileNotFoundError(
                    errno.ENOENT, "No such remote folder", folder_id or "/"
                )
            return [
                self._describe(self._child_id(folder_id, child.name))
                for child in sorted(folder.iterdir())
                if not child.name.endswith(".part")
            ]

        return await self._run(f"list {folder_id or '/'}", _list)

    async def create_folder(
        self, name: str, parent_id: str | None
    ) -> Result[str]:
        def _create() -> str:
            folder_id = self._child_id(parent_id, name)
            self._resolve(folder_id).mkdir(exist_ok=True)
            return folder_id

        return await self._run(f"create folder {name}", _create)

    async def metadata(self, file_id: str) -> Result[RemoteMetadata]:
        def _metadata() -> RemoteMetadata:
            info = self._describe(file_id, with_checksum=True)
            return RemoteMetadata(
                checksum=info.checksum,
                size=info.size,
                modified_time=info.modified_time,
            )

        return await self._run(f"metadata {file_id}", _metadata)
