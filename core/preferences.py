import json
import logging
import os
import threading
from typing import Any, Dict

logger = logging.getLogger(__name__)


class Preferences:
    """
    Process-wide key/value storage persisted as a small JSON file.
    Holds flags such as the one-time migration marker.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[Preferences] Could not read {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    def get_bool(self, key: str, default: bool = False) -> bool:
        with self._lock:
            value = self._read().get(key, default)
        return bool(value)

    def set_bool(self, key: str, value: bool):
        with self._lock:
            data = self._read()
            data[key] = bool(value)
            self._write(data)

    def remove(self, key: str):
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)
