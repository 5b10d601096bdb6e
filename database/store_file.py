"""
FileSessionStore — JSON file-backed session store that survives restarts.

Data layout:
  {data_dir}/
    sessions.json

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Flushes on every mutation, while still holding the store lock
  - Single-process only (no cross-process claim safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from database.models import active_key
from database.store_memory import InMemorySessionStore

logger = structlog.get_logger()


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads sessions from disk and rebuilds the active index.
    On every write: rewrites sessions.json via a temp file + rename.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    @property
    def file_path(self) -> Path:
        return self._data_dir / "sessions.json"

    # ── Load / Save ───────────────────────────────────────

    def _load_all(self):
        path = self.file_path
        if not path.exists():
            return
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(path), error=str(e))
            return

        self._sessions = data if isinstance(data, dict) else {}
        self._active_index.clear()
        for sid, s in self._sessions.items():
            if s.get("status") not in ("completed", "failed"):
                self._active_index[active_key(s["flow_id"], s["conversation_id"])] = sid
        logger.debug("file_store_loaded",
                     sessions=len(self._sessions),
                     active=len(self._active_index))

    def _persist(self):
        path = self.file_path
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._sessions, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX
