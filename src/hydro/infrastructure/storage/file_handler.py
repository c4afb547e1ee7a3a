import copy
import os
import shutil
import threading
from abc import abstractmethod
from datetime import datetime
from typing import IO, Any, Dict, List, Optional, Tuple, Type

from hydro.infrastructure.logging.logger import get_logger

from .storage_handler_interface import TABLES, BaseStorageHandler

logger = get_logger(__name__)


class FileStorageHandler(BaseStorageHandler):
    """
    Storage backend that keeps all tables in memory and rewrites a single file
    on every mutation.
    """

    extension = "db"
    parse_errors: Tuple[Type[Exception], ...] = ()

    def __init__(self, db_file: Optional[str] = None):
        """
        Initialize the handler.

        :param db_file: Path to the database file. If None, defaults to
                        {HYDRO_WORKDIR}/hydro_database.{extension}.
        """
        workdir = os.environ.get("HYDRO_WORKDIR", "./data")
        self.db_file = db_file or os.path.join(workdir, f"hydro_database.{self.extension}")
        directory = os.path.dirname(self.db_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self._lock = threading.RLock()
        self.data = self._load_data()
        self.initialize_structure()

    @abstractmethod
    def _read(self, f: IO[str]) -> Any:
        """Parse the file contents."""

    @abstractmethod
    def _write(self, data: Dict[str, Any], f: IO[str]) -> None:
        """Serialize ``data`` into the file."""

    def _load_data(self) -> Dict[str, Dict[str, Any]]:
        """
        Load data from the file. If the file contains invalid content, back it
        up and start from an empty database.

        :return: The loaded data as a dictionary.
        """
        if os.path.exists(self.db_file) and os.path.getsize(self.db_file) > 0:
            try:
                with open(self.db_file, "r") as f:
                    data = self._read(f)
                if not isinstance(data, dict):
                    raise ValueError("Invalid database format: Expected a dictionary.")
                return data
            except (ValueError, *self.parse_errors) as e:
                logger.error("Invalid database file, reinitializing", path=self.db_file, error=str(e))
                backup_path = self.create_backup()
                logger.warning("Backup of corrupted database created", path=backup_path)

        logger.warning("Database file not found or empty, initializing", path=self.db_file)
        return {}

    def _save_data(self) -> None:
        """
        Save data to the file.

        :raises IOError: If there is an error writing to the file.
        """
        try:
            with open(self.db_file, "w") as f:
                self._write(self.data, f)
            logger.debug("Database saved", path=self.db_file)
        except IOError as e:
            logger.error("Failed to save database", path=self.db_file, error=str(e))
            raise

    def initialize_structure(self) -> None:
        """Ensure every table exists."""
        with self._lock:
            missing = [table for table in TABLES if table not in self.data]
            for table in missing:
                self.data[table] = {}
            if missing:
                self._save_data()
                logger.info("Initialized database structure", path=self.db_file, tables=missing)

    def insert(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self.data.setdefault(table, {})[key] = copy.deepcopy(value)
            self._save_data()

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self.data.get(table, {}).get(key)
            return copy.deepcopy(value) if value is not None else None

    def update(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            if table in self.data and key in self.data[table]:
                self.data[table][key] = copy.deepcopy(value)
                self._save_data()

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            if table in self.data and key in self.data[table]:
                del self.data[table][key]
                self._save_data()

    def query(self, table: str, conditions: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Query records in a table that match specific conditions.

        :param table: The name of the table.
        :param conditions: All conditions must be satisfied for a match.
                           Example: {"instance_id": "1234", "state": "bound"}
        :return: A list of matching records.
        """
        with self._lock:
            return [
                copy.deepcopy(item)
                for item in self.data.get(table, {}).values()
                if all(item.get(k) == v for k, v in conditions.items())
            ]

    def scan(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self.data.get(table, {}).values()))

    def create_backup(self) -> str:
        """
        Create a backup of the current database file.

        :return: The path of the created backup file.
        """
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backup_path = f"{self.db_file}.backup.{timestamp}"
        shutil.copy(self.db_file, backup_path)
        logger.info("Backup of database created", path=backup_path)
        return backup_path

    def restore_from_backup(self, backup_path: str) -> None:
        """
        Restore the database from a backup file.

        :param backup_path: The path to the backup file to restore from.
        """
        if not os.path.exists(backup_path):
            raise FileNotFoundError(f"Backup file not found: {backup_path}")

        with self._lock:
            shutil.copy(backup_path, self.db_file)
            self.data = self._load_data()
            self.initialize_structure()
        logger.info("Database restored from backup", path=backup_path)
