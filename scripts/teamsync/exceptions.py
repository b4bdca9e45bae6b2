"""Typed exceptions for directory and authentication failures."""


class DirectoryError(Exception):
    """Base exception for all directory operations."""
    pass


class DirectoryTransportError(DirectoryError):
    """The request never produced an HTTP response (DNS, TLS, timeout)."""
    pass


class DirectoryAPIError(DirectoryError):
    """HTTP error from the directory API.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")

    def __reduce__(self):
        return (self.__class__, (self.status_code, self.message, self.endpoint))


class PermissionDeniedError(DirectoryAPIError):
    """Credential lacks the permission to read or change the resource."""
    pass


class ResourceNotFoundError(DirectoryAPIError):
    """The addressed team or membership does not exist."""
    pass


class ThrottledError(DirectoryAPIError):
    """Service kept throttling after all retries were used."""
    pass


class TeamNotFoundError(DirectoryError):
    """Team display name does not resolve to a team."""

    def __init__(self, team_name: str):
        self.team_name = team_name
        super().__init__(f"Team '{team_name}' not found")

    def __reduce__(self):
        return (self.__class__, (self.team_name,))


class AuthenticationError(Exception):
    """Session could not be established for the credential."""
    pass
