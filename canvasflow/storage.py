from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from shutil import copy2
from typing import Any


logger = logging.getLogger(__name__)

ITEMS_KEY = "canvasflow-items"
TABS_KEY = "canvasflow-tabs"
GRID_SPANS_RESET_KEY = "canvasflow_grid_spans_reset"


def _now_stamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S-%f")


def _backup_file(path: Path, backup_dir: Path, keep: int = 5) -> Path | None:
    if not path.exists() or keep <= 0:
        return None
    backup_dir.mkdir(parents=True, exist_ok=True)
    backup_path = backup_dir / f"{path.name}.bak-{_now_stamp()}"
    copy2(path, backup_path)

    # Keep only the most recent backups.
    backups = sorted(
        backup_dir.glob(f"{path.name}.bak-*"),
        key=lambda p: (p.stat().st_mtime, p.name),
        reverse=True,
    )
    for old in backups[keep:]:
        try:
            old.unlink()
        except OSError:
            logger.debug("Could not remove old backup %s", old)

    return backup_path


class MemoryStorage:
    """Key/value storage kept in process memory; used by tests and ephemeral runs."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(data or {})
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return json.loads(json.dumps(self._data[key])) if key in self._data else default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.loads(json.dumps(value, ensure_ascii=False))

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class LocalStorage(MemoryStorage):
    """JSON document on disk holding every key; each write backs up the previous file."""

    def __init__(self, path: Path | str, backup_dir: Path | str | None = None, keep_backups: int = 5) -> None:
        self.path = Path(path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.path.parent / "backups"
        self.keep_backups = keep_backups
        super().__init__(self._read())

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable state file %s (%s); starting empty", self.path, exc)
            return {}
        data = raw.get("data") if isinstance(raw, dict) else None
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        payload = {
            "version": 1,
            "updated_at": datetime.now().isoformat(timespec="seconds"),
            "data": self._data,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _backup_file(self.path, self.backup_dir, keep=self.keep_backups)
        self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            super().set(key, value)
            self._write()

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            super().remove(key)
            self._write()
