"""
File-tree backend: one JSON document per record.

Layout under ``root``::

    memory/<key>.json
    knowledge/entities/<id>.json
    knowledge/relations/<id>.json
    knowledge/observations/<id>.json
    ledger/sessions/<id>.json
    ledger/checkpoints/<id>.json
    ledger/events/<id>.json

Record ids are percent-encoded into file names; an id whose encoded form
would overrun the file-name limit is stored under ``sha256-<hex digest>``
instead (the real id stays inside the JSON). Every write lands in a
temporary file in the target directory, is fsynced, then renamed over the
destination, so a reader never sees a half-written record. Queries are
linear scans over a directory.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from marathon_memory.backends.base import StorageBackend, check_collection, matches
from marathon_memory.errors import StorageFailure

logger = logging.getLogger(__name__)

_DIRS: Dict[str, str] = {
    "memories": "memory",
    "entities": "knowledge/entities",
    "relations": "knowledge/relations",
    "observations": "knowledge/observations",
    "sessions": "ledger/sessions",
    "checkpoints": "ledger/checkpoints",
    "events": "ledger/events",
}

_SUFFIX = ".json"

# Leaves room for ".json.tmp.XXXXXXXX" under the usual 255-byte limit.
_MAX_STEM_BYTES = 200


def _file_name(record_id: str) -> str:
    stem = quote(record_id, safe="")
    if len(stem) > _MAX_STEM_BYTES:
        stem = "sha256-" + hashlib.sha256(record_id.encode("utf-8")).hexdigest()
    return stem + _SUFFIX


class FileTreeBackend(StorageBackend):
    """JSON-file-per-record store rooted at a directory."""

    name = "filetree"

    def __init__(self, root: str):
        self._root = Path(root)
        self._closed = False
        try:
            for rel in _DIRS.values():
                (self._root / rel).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Cannot create store at {self._root}: {exc}") from exc
        logger.info(f"FileTreeBackend opened: {self._root}")

    @property
    def root(self) -> Path:
        return self._root

    def _dir(self, collection: str) -> Path:
        if self._closed:
            raise StorageFailure("Backend is closed")
        return self._root / _DIRS[check_collection(collection)]

    def _path(self, collection: str, record_id: str) -> Path:
        return self._dir(collection) / _file_name(record_id)

    # -- Record access -----------------------------------------------------

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(collection, record_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageFailure(f"Cannot read {path}: {exc}") from exc

    def put(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        path = self._path(collection, record_id)
        data = json.dumps(record, ensure_ascii=False, indent=2) + "\n"
        tmp_fp: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                delete=False,
                dir=str(path.parent),
                prefix=path.name + ".tmp.",
            ) as f:
                tmp_fp = Path(f.name)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(str(tmp_fp), str(path))
            tmp_fp = None
        except (OSError, TypeError, ValueError) as exc:
            raise StorageFailure(f"Cannot write {path}: {exc}") from exc
        finally:
            if tmp_fp is not None and tmp_fp.exists():
                tmp_fp.unlink()

    def delete(self, collection: str, record_id: str) -> bool:
        path = self._path(collection, record_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageFailure(f"Cannot delete {path}: {exc}") from exc
        return True

    def scan(
        self, collection: str, where: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        directory = self._dir(collection)
        out: List[Dict[str, Any]] = []
        try:
            names = sorted(os.listdir(directory))
        except OSError as exc:
            raise StorageFailure(f"Cannot list {directory}: {exc}") from exc
        for name in names:
            if not name.endswith(_SUFFIX):
                continue  # temp files
            try:
                with open(directory / name, "r", encoding="utf-8") as f:
                    record = json.load(f)
            except FileNotFoundError:
                continue  # removed since listdir
            except (OSError, json.JSONDecodeError) as exc:
                raise StorageFailure(f"Cannot read {directory / name}: {exc}") from exc
            if matches(record, where):
                out.append(record)
        return out

    def close(self) -> None:
        self._closed = True
