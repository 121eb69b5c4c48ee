from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# Generous upper bounds; real values are 64 and 86 characters
MAX_TOKEN_ID_LENGTH = 128
MAX_PROOF_LENGTH = 256


class ErrorBody(BaseModel):
    """Error shape shared with existing clients."""

    type: Literal["generic_error", "invalid_token", "session_error"]
    message: Optional[str] = None


class OkResponse(BaseModel):
    ok: bool = True


class SessionGrantRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # strict so JSON booleans and numeric strings are refused rather than coerced
    request_time: float = Field(..., strict=True)
    token_id: str = Field(..., max_length=MAX_TOKEN_ID_LENGTH)
    proof_of_grant_request: str = Field(..., max_length=MAX_PROOF_LENGTH)


class SessionGrantResponse(BaseModel):
    session_id: str
    expiry: int = Field(..., description="Session expiry in epoch milliseconds")


class SessionInfoResponse(BaseModel):
    session_id: str
    token_id: str
    ghid: str
    ghlogin: str
    ghdisplayname: str


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    store: bool
