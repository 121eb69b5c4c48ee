from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from keygrant.api.error_handling import rejection_response
from keygrant.api.schemas import (
    ErrorBody,
    OkResponse,
    SessionGrantRequest,
    SessionGrantResponse,
    SessionInfoResponse,
)
from keygrant.logging import get_logger
from keygrant.service.auth import AuthenticatedSession
from keygrant.service.errors import RejectedError, Rejection, RejectionKind
from keygrant.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter()

# Largest integer a JavaScript client can represent exactly
MAX_SAFE_INTEGER = 2**53 - 1
_INTEGER = re.compile(r"-?[0-9]{1,16}")

_ERROR_RESPONSES = {
    400: {"model": ErrorBody},
    401: {"model": ErrorBody},
    403: {"model": ErrorBody},
    502: {"model": ErrorBody},
}


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _malformed(message: str) -> JSONResponse:
    return rejection_response(Rejection.of(RejectionKind.MALFORMED_INPUT, message))


def parse_safe_integer(raw: str) -> Optional[int]:
    """Parse a decimal integer within the JavaScript safe range, else None."""
    if not _INTEGER.fullmatch(raw):
        return None
    value = int(raw)
    if abs(value) > MAX_SAFE_INTEGER:
        return None
    return value


async def require_session(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthenticatedSession:
    session_id = request.headers.get(runtime.settings.session_header)
    result = runtime.authenticator.authenticate(session_id)
    if isinstance(result, Rejection):
        raise RejectedError(result)
    return result


@router.get(
    "/ghlogin",
    response_model=OkResponse,
    responses={302: {"description": "Redirect to GitHub authorization"}, **_ERROR_RESPONSES},
    tags=["grants"],
)
async def ghlogin(
    request: Request,
    code: Optional[str] = Query(None),
    token_id: Optional[str] = Query(None),
    proof: Optional[str] = Query(None),
    t: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Bind a keypair to a GitHub account.

    The first visit carries no ``code`` and is redirected to GitHub; GitHub
    sends the browser back here with the same signed parameters plus ``code``.
    """
    if not t:
        return _malformed("missing t")
    request_time = parse_safe_integer(t)
    if request_time is None:
        return _malformed("bad t")
    if not token_id:
        return _malformed("missing token_id")
    if not proof:
        return _malformed("missing proof")

    if not code:
        redirect_url = request.url_for("ghlogin").include_query_params(
            token_id=token_id, proof=proof, t=t
        )
        target = runtime.identity.authorization_url([], str(redirect_url))
        logger.info("ghlogin_redirect", token_id=token_id)
        return RedirectResponse(target, status_code=302)

    result = await runtime.token_grants.grant(token_id, proof, request_time, code)
    if isinstance(result, Rejection):
        return rejection_response(result)
    return OkResponse()


@router.post(
    "/mksession",
    response_model=SessionGrantResponse,
    responses=_ERROR_RESPONSES,
    tags=["grants"],
)
async def mksession(
    body: SessionGrantRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.session_grants.grant(
        body.request_time, body.token_id, body.proof_of_grant_request
    )
    if isinstance(result, Rejection):
        return rejection_response(result)
    return SessionGrantResponse(session_id=result.session_id, expiry=result.expiry_ms)


@router.post(
    "/revoke_token_by_id",
    response_model=OkResponse,
    responses=_ERROR_RESPONSES,
    tags=["revocation"],
)
async def revoke_token_by_id(
    session: AuthenticatedSession = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke the token the presented session was minted from."""
    runtime.revocation.revoke_by_token(session.token_id)
    return OkResponse()


@router.post(
    "/revoke_token_by_ghid",
    response_model=OkResponse,
    responses=_ERROR_RESPONSES,
    tags=["revocation"],
)
async def revoke_token_by_ghid(
    session: AuthenticatedSession = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke every token bound to the session's GitHub account."""
    runtime.revocation.revoke_by_identity(session.identity.id)
    return OkResponse()


@router.get(
    "/session",
    response_model=SessionInfoResponse,
    responses=_ERROR_RESPONSES,
    tags=["sessions"],
)
async def session_info(session: AuthenticatedSession = Depends(require_session)):
    return SessionInfoResponse(**session.to_info())
