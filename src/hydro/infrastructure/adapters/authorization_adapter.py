"""Authorization adapters implementing AuthorizationPort."""

from typing import Optional

from hydro.domain.instance import Context
from hydro.domain.ports.authorization_port import AuthorizationPort


class AllowAllAuthorizer(AuthorizationPort):
    """Grants every action; authentication is left to the HTTP middleware."""

    def authorize(self, action: str, context: Context, user: Optional[str]) -> bool:
        return True


class NamespaceAuthorizer(AuthorizationPort):
    """
    Grants a user the actions of every namespace it is mapped to.

    :param grants: Mapping of user name to the namespaces it may act in.
                   The namespace ``"*"`` grants all namespaces.
    """

    def __init__(self, grants: dict[str, list[str]]):
        self._grants = {user: set(namespaces) for user, namespaces in grants.items()}

    def authorize(self, action: str, context: Context, user: Optional[str]) -> bool:
        if user is None:
            return False
        namespaces = self._grants.get(user, set())
        return "*" in namespaces or context.namespace in namespaces
