from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class ExternalIdentity:
    id: str
    login: str
    display_name: str = ""


@dataclass
class Token:
    id: str
    external_identity_id: str
    external_credential: str
    active: bool
    created_at: datetime
    last_used_at: Optional[datetime] = None

    def __repr__(self) -> str:
        # keep the bearer credential out of tracebacks and debug output
        return (
            f"Token(id={self.id!r}, external_identity_id={self.external_identity_id!r}, "
            f"active={self.active!r}, last_used_at={self.last_used_at!r})"
        )


@dataclass(frozen=True)
class Session:
    id: str
    token_id: str
    external_identity_id: str
    external_login: str
    external_display_name: str
    created_at: datetime
    expiry: datetime

    @classmethod
    def new(
        cls,
        session_id: str,
        token_id: str,
        identity: ExternalIdentity,
        *,
        now: datetime,
        ttl_minutes: int,
    ) -> "Session":
        return cls(
            id=session_id,
            token_id=token_id,
            external_identity_id=identity.id,
            external_login=identity.login,
            external_display_name=identity.display_name,
            created_at=now,
            expiry=now + timedelta(minutes=ttl_minutes),
        )

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expiry


class TokenTransition(str, Enum):
    CREATED = "created"
    REBOUND = "rebound"
    REACTIVATED = "reactivated"
    REFUSED = "refused"


def apply_token_grant(
    existing: Optional[Token],
    token_id: str,
    identity_id: str,
    credential: str,
    *,
    now: datetime,
    allow_reactivation: bool = True,
) -> tuple[Optional[Token], TokenTransition]:
    """Compute the token row an init produces from the row it replaces.

    Returns ``(None, REFUSED)`` when the key was revoked and reactivation is
    disabled; the caller must not write anything in that case.
    """
    if existing is None:
        token = Token(
            id=token_id,
            external_identity_id=identity_id,
            external_credential=credential,
            active=True,
            created_at=now,
        )
        return token, TokenTransition.CREATED
    if not existing.active and not allow_reactivation:
        return None, TokenTransition.REFUSED
    transition = (
        TokenTransition.REBOUND if existing.active else TokenTransition.REACTIVATED
    )
    token = replace(
        existing,
        external_identity_id=identity_id,
        external_credential=credential,
        active=True,
    )
    return token, transition
