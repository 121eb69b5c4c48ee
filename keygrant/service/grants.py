"""Two-phase credential exchange.

``init`` binds a client keypair to a GitHub identity after the client proves
possession of the private key; ``grant_session`` trades a fresh proof for a
short-lived session. Expected refusals come back as ``Rejection`` values,
upstream and storage faults propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Union

from keygrant.clock import to_epoch_ms
from keygrant.logging import get_logger
from keygrant.service.auth import Store, TokenStore
from keygrant.service.crypto import TokenId, format_operand, new_session_id
from keygrant.service.errors import Rejection, RejectionKind
from keygrant.service.identity import IdentityProviderClient
from keygrant.service.replay import ReplayGuard
from keygrant.storage.models import Token, TokenTransition

INIT_SCOPE = "init"
GRANT_SESSION_SCOPE = "grant_session"


@dataclass(frozen=True)
class TokenGrant:
    token: Token
    transition: TokenTransition


@dataclass(frozen=True)
class SessionGrant:
    session_id: str
    expiry: datetime

    @property
    def expiry_ms(self) -> int:
        return to_epoch_ms(self.expiry)


async def _check_proof(
    replay_guard: ReplayGuard,
    token_id: str,
    proof: str,
    scope: str,
    request_time: float,
) -> Union[TokenId, Rejection]:
    """Identifier, window, signature and optional reuse checks shared by both grants.

    Returns the parsed token id when the proof is accepted.
    """
    parsed = TokenId.parse(token_id)
    if parsed is None:
        return Rejection.of(RejectionKind.MALFORMED_INPUT, "bad token_id")
    if not replay_guard.in_window(request_time):
        return Rejection.of(RejectionKind.INVALID_PROOF)
    operand = format_operand(request_time)
    if not parsed.verify(proof, scope, operand):
        return Rejection.of(RejectionKind.INVALID_PROOF)
    if not await replay_guard.claim(parsed.hex, scope, operand):
        return Rejection.of(RejectionKind.INVALID_PROOF)
    return parsed


class TokenGrantOrchestrator:
    def __init__(
        self,
        store: TokenStore,
        identity: IdentityProviderClient,
        replay_guard: ReplayGuard,
        *,
        allowed_logins: Iterable[str] = (),
        allow_reactivation: bool = True,
    ) -> None:
        self.store = store
        self.identity = identity
        self.replay_guard = replay_guard
        self.allowed_logins = frozenset(allowed_logins)
        self.allow_reactivation = allow_reactivation
        self.logger = get_logger(__name__)

    async def grant(
        self,
        token_id: str,
        proof: str,
        request_time: float,
        code: str,
    ) -> Union[TokenGrant, Rejection]:
        """Bind ``token_id`` to the GitHub account that authorised ``code``.

        The proof is checked before the code is spent, so a forged request
        never reaches the identity provider.
        """
        checked = await _check_proof(
            self.replay_guard, token_id, proof, INIT_SCOPE, request_time
        )
        if isinstance(checked, Rejection):
            self.logger.info("token_grant_rejected", token_id=token_id, reason=checked.kind.value)
            return checked
        canonical_id = checked.hex

        credential = await self.identity.exchange_code_for_credential(code)
        identity = await self.identity.resolve_identity(credential)

        if self.allowed_logins and identity.login not in self.allowed_logins:
            self.logger.warning("token_grant_not_allowed", token_id=canonical_id, login=identity.login)
            return Rejection.of(RejectionKind.NOT_ALLOWED)

        token, transition = self.store.upsert_token(
            canonical_id,
            identity.id,
            credential,
            allow_reactivation=self.allow_reactivation,
        )
        if token is None:
            self.logger.warning("token_reactivation_refused", token_id=canonical_id)
            return Rejection.of(RejectionKind.TOKEN_REVOKED)
        if transition is TokenTransition.REACTIVATED:
            self.logger.warning(
                "token_reactivated", token_id=canonical_id, identity_id=identity.id
            )
        else:
            self.logger.info(
                "token_granted",
                token_id=canonical_id,
                identity_id=identity.id,
                transition=transition.value,
            )
        return TokenGrant(token=token, transition=transition)


class SessionGrantOrchestrator:
    def __init__(
        self,
        store: Store,
        identity: IdentityProviderClient,
        replay_guard: ReplayGuard,
    ) -> None:
        self.store = store
        self.identity = identity
        self.replay_guard = replay_guard
        self.logger = get_logger(__name__)

    async def grant(
        self,
        request_time: float,
        token_id: str,
        proof: str,
    ) -> Union[SessionGrant, Rejection]:
        checked = await _check_proof(
            self.replay_guard, token_id, proof, GRANT_SESSION_SCOPE, request_time
        )
        if isinstance(checked, Rejection):
            self.logger.info("session_grant_rejected", token_id=token_id, reason=checked.kind.value)
            return checked
        canonical_id = checked.hex

        token = self.store.get_active_token(canonical_id)
        if token is None:
            self.logger.info("session_grant_invalid_token", token_id=canonical_id)
            return Rejection.of(RejectionKind.INVALID_TOKEN)

        # Re-resolve so the session snapshot reflects the account as it is now
        identity = await self.identity.resolve_identity(token.external_credential)
        self.store.touch_token(canonical_id)
        session = self.store.create_session(new_session_id(), canonical_id, identity)
        self.logger.info(
            "session_granted",
            token_id=canonical_id,
            identity_id=identity.id,
            expiry=session.expiry.isoformat(),
        )
        return SessionGrant(session_id=session.id, expiry=session.expiry)
