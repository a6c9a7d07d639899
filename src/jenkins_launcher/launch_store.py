"""Persistent history of builds launched through this server.

Records are stored in a JSON file so they survive across server restarts.
The default location is ``~/.jenkins_launcher/launches.json`` and can be
overridden with the ``JENKINS_LAUNCH_STORE_PATH`` environment variable.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jenkins_launcher.config import get_store_path

UPDATABLE_FIELDS = ("status", "queue_url", "build_number", "result", "console_url", "message")


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class LaunchStore:
    """Thread-safe, file-backed store of launch records."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_store_path()
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return []
        return data if isinstance(data, list) else []

    def _save(self, records: list[dict[str, Any]]) -> None:
        self._path.write_text(
            json.dumps(records, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    def add(
        self,
        *,
        launch_id: str,
        job_name: str,
        parameters: dict[str, str] | None,
    ) -> dict[str, Any]:
        """Add a new launch record and return it."""
        record: dict[str, Any] = {
            "launch_id": launch_id,
            "job_name": job_name,
            "parameters": parameters or {},
            "queue_url": "",
            "build_number": None,
            "status": "SUBMITTING",
            "result": "",
            "console_url": "",
            "message": "",
            "started_at": _now(),
            "finished_at": None,
        }
        with self._lock:
            records = self._load()
            records.append(record)
            self._save(records)
        return record

    def get(self, launch_id: str) -> dict[str, Any] | None:
        with self._lock:
            records = self._load()
        return next((r for r in records if r.get("launch_id") == launch_id), None)

    def list_all(self) -> list[dict[str, Any]]:
        """Return all records (newest first)."""
        with self._lock:
            records = self._load()
        return list(reversed(records))

    def update(self, launch_id: str, *, finished: bool = False, **fields: Any) -> dict[str, Any] | None:
        """Update the record of *launch_id*; ``None`` values are ignored."""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown launch record fields: {', '.join(sorted(unknown))}")
        with self._lock:
            records = self._load()
            for rec in records:
                if rec.get("launch_id") == launch_id:
                    rec.update({k: v for k, v in fields.items() if v is not None})
                    if finished and not rec.get("finished_at"):
                        rec["finished_at"] = _now()
                    self._save(records)
                    return rec
        return None

    def clear(self) -> None:
        with self._lock:
            self._save([])


_store: LaunchStore | None = None


def get_store() -> LaunchStore:
    """Return the module-level singleton store instance."""
    global _store
    if _store is None:
        _store = LaunchStore()
    return _store
