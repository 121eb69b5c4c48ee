from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Union

from keygrant.logging import get_logger
from keygrant.service.crypto import TokenId
from keygrant.service.errors import Rejection, RejectionKind
from keygrant.storage.models import ExternalIdentity, Session, Token, TokenTransition


class TokenStore(Protocol):
    def upsert_token(
        self,
        token_id: str,
        identity_id: str,
        credential: str,
        *,
        allow_reactivation: bool = True,
    ) -> tuple[Optional[Token], TokenTransition]: ...

    def get_token(self, token_id: str) -> Optional[Token]: ...

    def get_active_token(self, token_id: str) -> Optional[Token]: ...

    def list_tokens_for_identity(self, identity_id: str) -> List[Token]: ...

    def touch_token(self, token_id: str) -> None: ...

    def deactivate_token(self, token_id: str) -> int: ...

    def deactivate_tokens_for_identity(self, identity_id: str) -> int: ...


class SessionStore(Protocol):
    def create_session(
        self, session_id: str, token_id: str, identity: ExternalIdentity
    ) -> Session: ...

    def get_valid_session(self, session_id: str) -> Optional[Session]: ...

    def purge_expired_sessions(self) -> int: ...


class Store(TokenStore, SessionStore, Protocol):
    def ping(self) -> bool: ...


@dataclass(frozen=True)
class AuthenticatedSession:
    session_id: str
    token_id: str
    identity: ExternalIdentity

    def to_info(self) -> dict:
        """Session-info shape consumed by other platform services."""
        return {
            "session_id": self.session_id,
            "token_id": self.token_id,
            "ghid": self.identity.id,
            "ghlogin": self.identity.login,
            "ghdisplayname": self.identity.display_name,
        }


class SessionAuthenticator:
    """Resolve a presented session id to the identity it was issued for.

    Every failure yields the same BAD_SESSION rejection, so callers cannot
    tell an unknown id from an expired or revoked one.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def authenticate(
        self, session_id: Optional[str]
    ) -> Union[AuthenticatedSession, Rejection]:
        if not session_id:
            return Rejection.of(RejectionKind.BAD_SESSION)
        session = self.store.get_valid_session(session_id)
        if session is None:
            self.logger.info("session_rejected")
            return Rejection.of(RejectionKind.BAD_SESSION)
        return AuthenticatedSession(
            session_id=session.id,
            token_id=session.token_id,
            identity=ExternalIdentity(
                id=session.external_identity_id,
                login=session.external_login,
                display_name=session.external_display_name,
            ),
        )


class RevocationService:
    def __init__(self, store: TokenStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    def revoke_by_token(self, token_id: str) -> int:
        """Deactivate one token; sessions minted from it stop validating at once."""
        parsed = TokenId.parse(token_id)
        # malformed ids cannot name a stored token
        if parsed is None:
            return 0
        token_id = parsed.hex
        count = self.store.deactivate_token(token_id)
        self.logger.info("tokens_revoked", by="token_id", token_id=token_id, count=count)
        return count

    def revoke_by_identity(self, identity_id: str) -> int:
        count = self.store.deactivate_tokens_for_identity(str(identity_id))
        self.logger.info("tokens_revoked", by="identity", identity_id=identity_id, count=count)
        return count
