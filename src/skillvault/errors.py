from __future__ import annotations

from enum import Enum
from pathlib import Path


class SkillvaultError(RuntimeError):
    pass


class ValidationError(SkillvaultError):
    """Malformed identifiers, sizes or formats. Never retried."""

    def __init__(self, message: str, *, field: str | None = None, value: object = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class NetworkErrorKind(str, Enum):
    TIMEOUT = "timeout"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    NOT_FOUND = "not_found"
    CONNECTION_FAILURE = "connection_failure"


class NetworkError(SkillvaultError):
    def __init__(
        self,
        message: str,
        *,
        kind: NetworkErrorKind = NetworkErrorKind.CONNECTION_FAILURE,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status_code = status_code


class DependencyErrorKind(str, Enum):
    CIRCULAR = "circular"
    DEPTH_EXCEEDED = "depth_exceeded"
    NOT_FOUND = "not_found"


class DependencyError(SkillvaultError):
    def __init__(self, message: str, *, kind: DependencyErrorKind, name: str, path: list[str] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.name = name
        self.path = list(path or [name])


class FileSystemError(SkillvaultError):
    def __init__(self, message: str, *, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class ConfirmationRequiredError(FileSystemError):
    """Raised when an unpack target exists and overwriting was not confirmed."""
