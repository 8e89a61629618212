"""Group-level adapter over a ``RemoteStore``.

``GroupRemote`` knows the remote folder layout of a group and the JSON
schemas stored in it.  Every store call goes through the ``RetryPolicy``;
an exhausted or non-retryable failure is raised as the ``SyncError`` the
policy surfaced, carrying the operation name and attempt count.

JSON payloads are staged through temporary files because the store
protocol transfers files, not bytes.  Uploads of content files skip the
transfer when the MD5 of the local payload equals the checksum the store
reports for the same-named remote file.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from ..core.result import Result
from ..core.retry import RetryPolicy
from ..errors import MalformedRequestError
from ..remote.base import RemoteFile, RemoteStore
from ..remote.filesystem import md5_file
from . import layout
from .layout import GroupFolders
from .models import ChangeLogEntry, GroupManifest

T = TypeVar("T")
logger = logging.getLogger(__name__)


def encode_json(payload: Any) -> bytes:
    """Deterministic JSON encoding so equal payloads hash equally."""
    return json.dumps(
        payload, indent=2, sort_keys=True, ensure_ascii=False
    ).encode("utf-8")


class GroupRemote:
    """Remote operations for group sync, with retry and deduplication.

    Args:
        store: Backend implementing the ``RemoteStore`` protocol.
        retry: Retry policy applied to every store call.
        app_root: Name of the top-level application folder.
    """

    def __init__(
        self,
        store: RemoteStore,
        retry: RetryPolicy | None = None,
        app_root: str = "GroupShare",
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        self.app_root = app_root
        self._folder_ids: dict[tuple[str | None, str], str] = {}

    async def _call(
        self, operation: str, op: Callable[[], Awaitable[Result[T]]]
    ) -> T:
        result = await self.retry.run(op, operation=operation)
        return result.unwrap()

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    async def authenticate(self) -> None:
        await self._call("authenticate", self.store.authenticate)

    async def ensure_folder(self, name: str, parent_id: str | None) -> str:
        key = (parent_id, name)
        if key not in self._folder_ids:
            self._folder_ids[key] = await self._call(
                f"create folder {name}",
                lambda: self.store.create_folder(name, parent_id),
            )
        return self._folder_ids[key]

    async def ensure_folders(self, group_name: str) -> GroupFolders:
        """Fetch or create the folder tree of a group."""
        app_root = await self.ensure_folder(self.app_root, None)
        group = await self.ensure_folder(
            layout.group_folder_name(group_name), app_root
        )
        return GroupFolders(
            app_root=app_root,
            group=group,
            songs=await self.ensure_folder(layout.SONGS_FOLDER, group),
            annotations=await self.ensure_folder(
                layout.ANNOTATIONS_FOLDER, group
            ),
            setlists=await self.ensure_folder(layout.SETLISTS_FOLDER, group),
            changelog=await self.ensure_folder(layout.CHANGELOG_FOLDER, group),
        )

    async def annotation_folder(
        self, folders: GroupFolders, file_id: str, member_id: str
    ) -> str:
        file_folder = await self.ensure_folder(file_id, folders.annotations)
        return await self.ensure_folder(member_id, file_folder)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def list_folder(self, folder_id: str) -> list[RemoteFile]:
        return await self._call(
            f"list {folder_id}", lambda: self.store.list(folder_id)
        )

    async def find_file(self, folder_id: str, name: str) -> RemoteFile | None:
        for item in await self.list_folder(folder_id):
            if item.name == name and not item.is_folder:
                return item
        return None

    async def remote_checksum(self, file: RemoteFile) -> str | None:
        meta = await self._call(
            f"metadata {file.name}", lambda: self.store.metadata(file.id)
        )
        return meta.checksum

    async def upload_file_if_changed(
        self, folder_id: str, name: str, local_path: Path
    ) -> bool:
        """Upload *local_path* as *name* unless the remote copy is identical.

        Returns:
            ``True`` if content was transferred, ``False`` if skipped.
        """
        existing = await self.find_file(folder_id, name)
        if existing is not None:
            if await self.remote_checksum(existing) == md5_file(local_path):
                logger.debug("Skipping upload of %s: checksum unchanged", name)
                return False
        await self._call(
            f"upload {name}",
            lambda: self.store.upload(local_path, name, folder_id),
        )
        return True

    async def download_file(
        self, folder_id: str, name: str, local_path: Path
    ) -> Path | None:
        existing = await self.find_file(folder_id, name)
        if existing is None:
            return None
        return await self._call(
            f"download {name}",
            lambda: self.store.download(existing.id, local_path),
        )

    # ------------------------------------------------------------------
    # JSON documents
    # ------------------------------------------------------------------

    async def upload_json(
        self, folder_id: str, name: str, payload: Any, *, dedup: bool = True
    ) -> bool:
        """Upload *payload* as a JSON file; see ``upload_file_if_changed``."""
        with tempfile.TemporaryDirectory(prefix="groupshare-") as tmp:
            staged = Path(tmp) / name
            staged.write_bytes(encode_json(payload))
            if dedup:
                return await self.upload_file_if_changed(
                    folder_id, name, staged
                )
            await self._call(
                f"upload {name}",
                lambda: self.store.upload(staged, name, folder_id),
            )
            return True

    async def _read_json(self, file: RemoteFile) -> Any:
        with tempfile.TemporaryDirectory(prefix="groupshare-") as tmp:
            target = Path(tmp) / file.name
            path = await self._call(
                f"download {file.name}",
                lambda: self.store.download(file.id, target),
            )
            try:
                with open(path, encoding="utf-8") as fh:
                    return json.load(fh)
            except ValueError as exc:
                raise MalformedRequestError(
                    f"Invalid JSON in {file.name}",
                    operation=f"download {file.name}",
                    cause=exc,
                ) from exc

    async def download_json(self, folder_id: str, name: str) -> Any | None:
        existing = await self.find_file(folder_id, name)
        if existing is None:
            return None
        return await self._read_json(existing)

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    async def download_manifest(
        self, folders: GroupFolders
    ) -> GroupManifest | None:
        raw = await self.download_json(folders.group, layout.MANIFEST_NAME)
        if raw is None:
            return None
        try:
            return GroupManifest.model_validate(raw)
        except ValueError as exc:
            raise MalformedRequestError(
                "Invalid manifest.json", operation="download manifest", cause=exc
            ) from exc

    async def upload_manifest(
        self, folders: GroupFolders, manifest: GroupManifest
    ) -> None:
        await self.upload_json(
            folders.group,
            layout.MANIFEST_NAME,
            manifest.model_dump(mode="json", by_alias=True),
            dedup=False,
        )

    # ------------------------------------------------------------------
    # Changelog
    # ------------------------------------------------------------------

    async def list_changelog(
        self, folders: GroupFolders, since: int | None = None
    ) -> list[RemoteFile]:
        """Changelog files whose server modification time is >= *since*."""
        files = [
            item
            for item in await self.list_folder(folders.changelog)
            if not item.is_folder
            and layout.parse_changelog_file_name(item.name) is not None
        ]
        if since is not None:
            files = [item for item in files if item.modified_time >= since]
        return files

    async def download_entry(self, file: RemoteFile) -> ChangeLogEntry:
        raw = await self._read_json(file)
        try:
            return ChangeLogEntry.from_wire(raw)
        except ValueError as exc:
            raise MalformedRequestError(
                f"Invalid changelog entry {file.name}",
                operation=f"download {file.name}",
                cause=exc,
            ) from exc

    async def upload_entry(
        self, folders: GroupFolders, entry: ChangeLogEntry
    ) -> None:
        await self.upload_json(
            folders.changelog,
            layout.changelog_file_name(entry),
            entry.to_wire(),
            dedup=False,
        )
