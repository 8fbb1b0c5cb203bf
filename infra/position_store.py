"""
copytrader Infrastructure: Position Store

Durable position records in a JSON file with atomic writes.
Closed positions stay in the file as history.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import RepositoryError

logger = logging.getLogger(__name__)


EMPTY_STORE = {"positions": []}


class JsonPositionStore:
    """
    Position repository backed by a single JSON document.

    Features:
    - Atomic writes (temp file + rename)
    - Point update by id (partial field merge)
    - Full scan of active records for startup rebuild
    - Thread-safe operations
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize position store.

        Args:
            path: Path to positions JSON file (default: data/positions.json)
        """
        if path:
            self.path = Path(path)
        else:
            self.path = Path(os.getenv("POSITIONS_FILE", "data/positions.json"))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized JsonPositionStore at {self.path}")

    def initialize(self) -> None:
        """Create an empty store if none exists; fail loudly if the file is unreadable."""
        with self._lock:
            if not self.path.exists():
                self._write(dict(EMPTY_STORE))
                logger.info("Created empty position store")
                return
            self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"positions": []}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RepositoryError(f"Failed to read position store {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("positions"), list):
            raise RepositoryError(f"Invalid position store format in {self.path}")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".positions_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise RepositoryError(f"Failed to write position store {self.path}: {e}") from e

    def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Append a new position record."""
        if not record.get("id"):
            raise ValueError("Position record requires an id")
        with self._lock:
            data = self._read()
            if any(p.get("id") == record["id"] for p in data["positions"]):
                raise ValueError(f"Position {record['id']} already exists")
            data["positions"].append(dict(record))
            self._write(data)
        logger.debug(f"Stored position {record['id']}")
        return dict(record)

    def get(self, position_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for record in self._read()["positions"]:
                if record.get("id") == position_id:
                    return dict(record)
        return None

    def update(self, position_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge ``changes`` into the record with ``position_id``.

        Raises:
            KeyError: If the id is not present
        """
        with self._lock:
            data = self._read()
            for idx, record in enumerate(data["positions"]):
                if record.get("id") == position_id:
                    merged = {**record, **changes}
                    data["positions"][idx] = merged
                    self._write(data)
                    return dict(merged)
        raise KeyError(position_id)

    def list_active(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(p) for p in self._read()["positions"] if p.get("status") == "active"]

    def list_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(p) for p in self._read()["positions"]]
