from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

TABLES = ("instances", "bindings", "operations")


class BaseStorageHandler(ABC):
    """
    Abstract base class defining the interface for storage backends.

    Records are JSON-compatible dictionaries grouped in tables and keyed by a
    string ID. ``get``, ``query`` and ``scan`` return copies; callers may mutate
    them freely.
    """

    @abstractmethod
    def insert(self, table: str, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace an item in the specified table."""
        pass

    @abstractmethod
    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Retrieve an item from the specified table by its key."""
        pass

    @abstractmethod
    def update(self, table: str, key: str, value: Dict[str, Any]) -> None:
        """Update an existing item in the specified table."""
        pass

    @abstractmethod
    def delete(self, table: str, key: str) -> None:
        """Delete an item from the specified table by its key."""
        pass

    @abstractmethod
    def query(self, table: str, conditions: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Query items whose top-level fields equal every condition."""
        pass

    @abstractmethod
    def scan(self, table: str) -> List[Dict[str, Any]]:
        """Scan all items from the specified table."""
        pass
