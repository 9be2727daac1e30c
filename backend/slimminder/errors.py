from __future__ import annotations

from typing import Optional


class ProviderError(Exception):
    """Base class for failures talking to an open-banking provider."""


class ProviderTransportError(ProviderError):
    """Network failure or timeout before a provider response was received."""


class ProviderResponseError(ProviderError):
    """The provider answered, but with a non-success status or a payload we cannot read."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in {401, 403}


class StorageError(RuntimeError):
    pass


class ConnectionExistsError(ValueError):
    pass


class AuthorizationStateError(ValueError):
    pass


class ConnectionUnavailableError(RuntimeError):
    def __init__(self, connection_id: str, message: str) -> None:
        super().__init__(message)
        self.connection_id = connection_id


class AuthorizationStartError(RuntimeError):
    pass
