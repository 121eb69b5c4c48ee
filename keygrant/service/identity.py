from __future__ import annotations

from typing import Optional, Protocol, Sequence
from urllib.parse import urlencode

import httpx

from keygrant.logging import get_logger
from keygrant.service.errors import IdentityProviderError
from keygrant.storage.models import ExternalIdentity

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"


class IdentityProviderClient(Protocol):
    async def exchange_code_for_credential(self, code: str) -> str: ...

    async def resolve_identity(self, credential: str) -> ExternalIdentity: ...

    def authorization_url(self, scopes: Sequence[str], redirect_url: str) -> str: ...


class GitHubIdentityClient:
    """GitHub OAuth web flow: code exchange and authenticated-user lookup.

    Every failure, whether transport, HTTP status or an unusable payload, is
    raised as IdentityProviderError so callers see one upstream fault type.
    """

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        user_agent: str = "keygrant",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger(__name__)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
            headers={"User-Agent": self.user_agent},
        )

    def _require_app_credentials(self) -> tuple[str, str]:
        if not self.client_id or not self.client_secret:
            self.logger.error("github_oauth_not_configured")
            raise IdentityProviderError("identity provider is not configured")
        return self.client_id, self.client_secret

    def authorization_url(self, scopes: Sequence[str], redirect_url: str) -> str:
        client_id, _ = self._require_app_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_url,
            "scope": " ".join(scopes),
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code_for_credential(self, code: str) -> str:
        client_id, client_secret = self._require_app_credentials()
        try:
            async with self._client() as client:
                response = await client.post(
                    GITHUB_TOKEN_URL,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                    },
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            self.logger.error("github_code_exchange_failed", error=str(exc))
            raise IdentityProviderError("code exchange failed") from exc
        except ValueError as exc:
            self.logger.error("github_code_exchange_parse_error", error=str(exc))
            raise IdentityProviderError("code exchange failed") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            # GitHub answers 200 with an error field for bad or reused codes
            error = payload.get("error") if isinstance(payload, dict) else None
            self.logger.warning("github_code_rejected", error=error)
            raise IdentityProviderError(
                "code exchange failed", detail={"provider_error": error}
            )
        return access_token

    async def resolve_identity(self, credential: str) -> ExternalIdentity:
        try:
            async with self._client() as client:
                response = await client.get(
                    GITHUB_USER_URL,
                    headers={
                        "Authorization": f"Bearer {credential}",
                        "Accept": "application/vnd.github+json",
                    },
                )
                response.raise_for_status()
                userinfo = response.json()
        except httpx.HTTPError as exc:
            self.logger.error("github_user_lookup_failed", error=str(exc))
            raise IdentityProviderError("identity lookup failed") from exc
        except ValueError as exc:
            self.logger.error("github_user_parse_error", error=str(exc))
            raise IdentityProviderError("identity lookup failed") from exc

        if not isinstance(userinfo, dict):
            self.logger.error("github_user_invalid_format", type=str(type(userinfo)))
            raise IdentityProviderError("identity lookup failed")
        user_id = userinfo.get("id")
        login = userinfo.get("login")
        if user_id is None or not login:
            self.logger.error("github_user_missing_fields")
            raise IdentityProviderError("identity lookup failed")
        return ExternalIdentity(
            id=str(user_id),
            login=str(login),
            display_name=userinfo.get("name") or "",
        )
