import json
from typing import IO, Any, Dict

from .file_handler import FileStorageHandler


class JSONHandler(FileStorageHandler):
    """
    A handler for managing a JSON-based database backend.
    """

    extension = "json"
    parse_errors = (json.JSONDecodeError,)

    def _read(self, f: IO[str]) -> Any:
        return json.load(f)

    def _write(self, data: Dict[str, Any], f: IO[str]) -> None:
        json.dump(data, f, indent=2)
