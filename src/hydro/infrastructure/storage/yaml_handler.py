from typing import IO, Any, Dict

import yaml

from .file_handler import FileStorageHandler


class YAMLHandler(FileStorageHandler):
    """
    A handler for managing a YAML-based database backend.
    """

    extension = "yaml"
    parse_errors = (yaml.YAMLError,)

    def _read(self, f: IO[str]) -> Any:
        return yaml.safe_load(f)

    def _write(self, data: Dict[str, Any], f: IO[str]) -> None:
        yaml.safe_dump(data, f, indent=2)
