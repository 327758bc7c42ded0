"""Atomic JSON-file persistence shared by the durable stores."""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonFileStore:
    """Base for stores that keep their whole state in memory and mirror it to
    one JSON file. Subclasses implement ``_load_state`` and ``_dump_state``;
    every mutation runs under ``self._lock`` and ends with ``await self._persist()``.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._load_sync()

    @property
    def path(self) -> Path:
        return self._path

    def _load_sync(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state({})
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[store] failed to load {self._path.name}: {exc}")
            raw = {}
        self._load_state(raw if isinstance(raw, dict) else {})

    def _load_state(self, raw: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _dump_state(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _serialise_state(self) -> str:
        data = self._dump_state()
        data["updated_at"] = _now_iso()
        return json.dumps(data, indent=2, sort_keys=True)

    async def _persist(self) -> None:
        payload = self._serialise_state()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    async def ping(self) -> bool:
        """Cheap health probe: state is loaded and the directory is writable."""
        async with self._lock:
            return self._path.parent.exists() and self._path.parent.is_dir()


__all__ = ["JsonFileStore"]
