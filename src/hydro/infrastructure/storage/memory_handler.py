import copy
import threading
from typing import Any, Dict, List, Optional

from .storage_handler_interface import TABLES, BaseStorageHandler


class MemoryHandler(BaseStorageHandler):
    """
    In-process storage backend. Contents are lost when the process exits.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {table: {} for table in TABLES}

    def insert(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self.data.setdefault(table, {})[key] = copy.deepcopy(value)

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self.data.get(table, {}).get(key)
            return copy.deepcopy(value) if value is not None else None

    def update(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            if key in self.data.get(table, {}):
                self.data[table][key] = copy.deepcopy(value)

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            self.data.get(table, {}).pop(key, None)

    def query(self, table: str, conditions: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(item)
                for item in self.data.get(table, {}).values()
                if all(item.get(k) == v for k, v in conditions.items())
            ]

    def scan(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self.data.get(table, {}).values()))
