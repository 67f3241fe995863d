from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for scope enforcement failures."""


class ResourceAccessDenied(AuthorizationError):
    """Raised when a point decision denies access to an already-loaded resource.

    Callers translate this into a not-found response so the resource's
    existence is not confirmed to the subject.
    """

    def __init__(self, resource: str, action: str) -> None:
        self.resource = resource
        self.action = action
        super().__init__(f"Access denied for '{action}' on resource '{resource}'")
