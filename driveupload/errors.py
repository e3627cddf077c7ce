"""Structured exception hierarchy for the upload engine.

Every failure surfaced by the engine is an ``UploadError``. Subclasses fix
whether the failure is worth retrying, so callers never have to classify
transport errors themselves.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "UploadError",
    "TransientError",
    "PayloadDecodeError",
    "APIError",
    "ProtocolError",
    "PermanentError",
    "SizeLimitExceededError",
    "HashNotFoundError",
    "OperationCancelled",
    "CredentialExpiredError",
    "ConflictError",
    "DirectoryNotFoundError",
    "SourceNotReopenableError",
    "ResourceError",
    "ConfigurationError",
    "PartAlreadyExistsError",
]


class UploadError(Exception):
    """Base exception for all upload engine errors.

    Provides structured error information for debugging.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        remote: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.message = message
        self.remote = remote
        self.stage = stage
        self.details = details or {}
        self.suggestion = suggestion
        self.cause = cause
        if cause is not None:
            self.details.setdefault("cause", str(cause))
            self.details.setdefault("cause_type", type(cause).__name__)
        super().__init__(message)

    def __str__(self) -> str:
        head = self.message
        if self.stage or self.remote:
            head = f"[{self.stage or '?'}:{self.remote or '?'}] {self.message}"

        parts = [head]
        if self.details:
            parts.append("Details:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return "\n".join(parts)

    def with_context(
        self, *, stage: Optional[str] = None, remote: Optional[str] = None
    ) -> "UploadError":
        """Fill in stage/remote if they are not already set."""
        if self.stage is None:
            self.stage = stage
        if self.remote is None:
            self.remote = remote
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "remote": self.remote,
            "stage": self.stage,
            "retryable": self.retryable,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class TransientError(UploadError):
    """A failure that may succeed if the same call is made again."""

    retryable = True


class PayloadDecodeError(TransientError):
    """The negotiation response could not be decrypted or decompressed.

    The server may still have accepted the request, which is why the
    negotiator tries a directory-listing recovery before retrying.
    """


class APIError(UploadError):
    """The drive API rejected a call."""

    def __init__(
        self,
        message: str,
        *,
        errno: Optional[int] = None,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        self.errno = errno
        self.status_code = status_code
        details = kwargs.pop("details", None) or {}
        if errno is not None:
            details["errno"] = errno
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)


class ProtocolError(UploadError):
    """The server answered with something the protocol does not allow."""


class PermanentError(UploadError):
    """A failure that will not go away by retrying."""


class SizeLimitExceededError(PermanentError):
    """The object is larger than the selected upload path accepts."""

    def __init__(self, size: int, limit: int, **kwargs: Any) -> None:
        self.size = size
        self.limit = limit
        details = kwargs.pop("details", None) or {}
        details.update({"size": size, "limit": limit})
        super().__init__(
            f"object size {size} exceeds limit {limit}", details=details, **kwargs
        )


class HashNotFoundError(PermanentError):
    """Hash-only mode found no server-side copy of the content."""


class OperationCancelled(PermanentError):
    """The caller cancelled the upload."""


class CredentialExpiredError(PermanentError):
    """The object store rejected the temporary credentials."""


class ConflictError(PermanentError):
    """Another writer already holds the destination."""


class DirectoryNotFoundError(PermanentError):
    """The destination's parent directory does not exist."""


class SourceNotReopenableError(PermanentError):
    """No-copy mode needs a source that can be reopened, and this one cannot."""


class ResourceError(UploadError):
    """A local resource (temporary file, disk space) could not be used."""


class ConfigurationError(UploadError):
    """Invalid engine configuration."""

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs: Any) -> None:
        self.field = field
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class PartAlreadyExistsError(UploadError):
    """The object store already holds this multipart part."""

    def __init__(self, part_number: int, **kwargs: Any) -> None:
        self.part_number = part_number
        super().__init__(f"part {part_number} already exists", **kwargs)
