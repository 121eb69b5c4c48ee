from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class RejectionKind(str, Enum):
    """Expected, caller-facing refusals.

    Bad signatures and out-of-window timestamps share INVALID_PROOF so a
    caller cannot tell which check failed.
    """

    MALFORMED_INPUT = "malformed_input"
    INVALID_PROOF = "invalid_proof"
    INVALID_TOKEN = "invalid_token"
    BAD_SESSION = "bad_session"
    NOT_ALLOWED = "not_allowed"
    TOKEN_REVOKED = "token_revoked"


_STATUS_BY_KIND = {
    RejectionKind.MALFORMED_INPUT: 400,
    RejectionKind.INVALID_PROOF: 401,
    RejectionKind.INVALID_TOKEN: 401,
    RejectionKind.BAD_SESSION: 401,
    RejectionKind.NOT_ALLOWED: 403,
    RejectionKind.TOKEN_REVOKED: 403,
}

_DEFAULT_MESSAGES = {
    RejectionKind.MALFORMED_INPUT: "malformed request",
    RejectionKind.INVALID_PROOF: "invalid proof",
    RejectionKind.INVALID_TOKEN: "invalid token",
    RejectionKind.BAD_SESSION: "bad_session",
    RejectionKind.NOT_ALLOWED: "user not allowed",
    RejectionKind.TOKEN_REVOKED: "token revoked",
}


@dataclass(frozen=True)
class Rejection:
    kind: RejectionKind
    message: str = ""

    @classmethod
    def of(cls, kind: RejectionKind, message: Optional[str] = None) -> "Rejection":
        return cls(kind=kind, message=message or _DEFAULT_MESSAGES[kind])

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    def to_body(self) -> Dict[str, Any]:
        """Wire body; the shapes are shared with existing clients."""
        if self.kind is RejectionKind.INVALID_TOKEN:
            return {"type": "invalid_token"}
        if self.kind is RejectionKind.BAD_SESSION:
            return {"type": "session_error", "message": self.message}
        return {"type": "generic_error", "message": self.message}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class RejectedError(ServiceError):
    """Carries a Rejection out of a FastAPI dependency."""

    def __init__(self, rejection: Rejection) -> None:
        super().__init__(
            rejection.message,
            status_code=rejection.status_code,
            error_code=rejection.kind.value,
        )
        self.rejection = rejection


class IdentityProviderError(ServiceError):
    """The identity provider refused or failed a call (502)."""

    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "IdentityProviderError",
    "Rejection",
    "RejectedError",
    "RejectionKind",
    "ServiceError",
]
