"""Remote blob store interface and backends."""

from .base import RemoteFile, RemoteMetadata, RemoteStore
from .filesystem import FolderRemoteStore, md5_file

__all__ = [
    "FolderRemoteStore",
    "RemoteFile",
    "RemoteMetadata",
    "RemoteStore",
    "md5_file",
]
