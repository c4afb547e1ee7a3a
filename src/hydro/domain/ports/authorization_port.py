"""Domain port for request authorization."""

from abc import ABC, abstractmethod
from typing import Optional

from hydro.domain.instance import Context


class AuthorizationPort(ABC):
    @abstractmethod
    def authorize(self, action: str, context: Context, user: Optional[str]) -> bool:
        """Whether ``user`` may perform ``action`` in ``context``."""
