"""LocalStore persisted to a single JSON file.

The whole store is rewritten atomically (temp file + ``os.replace()``)
each time an outermost transaction commits, so a crash mid-write leaves
the previous state intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from .memory import MemoryLocalStore

logger = logging.getLogger(__name__)

STORE_FORMAT_VERSION = 1


class JsonLocalStore(MemoryLocalStore):
    """Durable local store.

    Args:
        path: JSON file holding records and changelog entries.  Created on
            the first commit if it does not exist.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        from ..sync.models import ChangeLogEntry

        if not self._path.exists():
            return
        with open(self._path, encoding="utf-8") as fh:
            data = json.load(fh)
        self._records = data.get("records", {})
        self._changes = {}
        for raw in data.get("changes", []):
            entry = ChangeLogEntry.model_validate(raw)
            self._changes[entry.change_id] = entry
        logger.debug(
            "Loaded local store %s (%d changes)", self._path, len(self._changes)
        )

    def _commit(self) -> None:
        payload = {
            "version": STORE_FORMAT_VERSION,
            "records": self._records,
            "changes": [
                entry.model_dump(mode="json", by_alias=True)
                for entry in self._changes.values()
            ],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
