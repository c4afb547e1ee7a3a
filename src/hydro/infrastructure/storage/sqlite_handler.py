import json
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from .storage_handler_interface import TABLES, BaseStorageHandler


class SQLiteHandler(BaseStorageHandler):
    """
    Storage backend keeping each table as ``(id, data)`` rows with JSON data.
    """

    def __init__(self, db_file: str = "hydro_database.sqlite"):
        self.db_file = db_file
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_file, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        with self._lock, self.conn:
            for table in TABLES:
                self.conn.execute(f'''
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data TEXT
                    )
                ''')

    @staticmethod
    def _table(table: str) -> str:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        return table

    def insert(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock, self.conn:
            self.conn.execute(f"INSERT OR REPLACE INTO {self._table(table)} (id, data) VALUES (?, ?)",
                              (key, json.dumps(value)))

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            cursor = self.conn.execute(f"SELECT data FROM {self._table(table)} WHERE id = ?", (key,))
            row = cursor.fetchone()
        return json.loads(row['data']) if row else None

    def update(self, table: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock, self.conn:
            self.conn.execute(f"UPDATE {self._table(table)} SET data = ? WHERE id = ?",
                              (json.dumps(value), key))

    def delete(self, table: str, key: str) -> None:
        with self._lock, self.conn:
            self.conn.execute(f"DELETE FROM {self._table(table)} WHERE id = ?", (key,))

    def query(self, table: str, conditions: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not conditions:
            return self.scan(table)
        where_clause = " AND ".join([f"json_extract(data, '$.{k}') = ?" for k in conditions.keys()])
        query = f"SELECT data FROM {self._table(table)} WHERE {where_clause}"
        with self._lock:
            cursor = self.conn.execute(query, tuple(conditions.values()))
            rows = cursor.fetchall()
        return [json.loads(row['data']) for row in rows]

    def scan(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self.conn.execute(f"SELECT data FROM {self._table(table)}")
            rows = cursor.fetchall()
        return [json.loads(row['data']) for row in rows]

    def close(self) -> None:
        with self._lock:
            self.conn.close()
