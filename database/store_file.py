"""
FileRecordStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    notifications.json      {record_id: record, ...}

Features:
  - Survives process restarts (unlike InMemoryRecordStore)
  - No external dependencies (no database server)
  - Every mutation is flushed before the call returns, so an enqueued
    record is on disk by the time the producer gets its id
  - A failed flush rolls the in-memory change back, so memory never runs
    ahead of the file
  - Single-process only: claims are atomic across tasks in one process,
    not across processes sharing the directory

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from database.store_base import StoreUnavailableError
from database.store_memory import InMemoryRecordStore
from models.schemas import NotificationRecord

logger = structlog.get_logger()

_FILENAME = "notifications.json"


class FileRecordStore(InMemoryRecordStore):
    """
    Extends InMemoryRecordStore with JSON file persistence.

    On init: loads all records from the JSON file into memory.
    On every write: rewrites the file via a temp file + rename.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_store_initialized",
                    data_dir=str(self._data_dir),
                    records=len(self._records))

    # ── Load / Save ───────────────────────────────────────

    @property
    def file_path(self) -> Path:
        return self._data_dir / _FILENAME

    def _load(self):
        path = self.file_path
        if not path.exists():
            return
        try:
            with open(path, "r") as f:
                data = json.load(f)
            self._records = {
                rid: NotificationRecord.model_validate(raw)
                for rid, raw in data.items()
            }
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            # Keep the unreadable file for inspection instead of overwriting it
            quarantine = path.with_suffix(".corrupt")
            path.rename(quarantine)
            self._records = {}
            logger.warning("file_store_load_error",
                           path=str(path), quarantined_to=str(quarantine), error=str(e))

    def _flush(self):
        path = self.file_path
        data = {rid: r.model_dump(mode="json") for rid, r in self._records.items()}
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(path)  # atomic on POSIX
        except OSError as e:
            raise StoreUnavailableError(f"Cannot write {path}: {e}") from e

    def _changed(self) -> None:
        self._flush()
