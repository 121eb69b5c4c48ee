from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from keygrant.clock import Clock, SystemClock
from keygrant.config import Settings
from keygrant.logging import get_logger
from keygrant.service.auth import RevocationService, SessionAuthenticator, Store
from keygrant.service.grants import SessionGrantOrchestrator, TokenGrantOrchestrator
from keygrant.service.identity import GitHubIdentityClient, IdentityProviderClient
from keygrant.service.replay import ProofCache, ReplayGuard
from keygrant.storage.memory import MemoryProofCache, MemoryStore
from keygrant.storage.postgres import PostgresStore
from keygrant.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_store(settings: Settings, clock: Clock) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: Store = MemoryStore(
                clock=clock,
                session_ttl_minutes=settings.session_ttl_minutes,
                state_path=settings.memory_store_path,
            )
        else:
            store = PostgresStore(
                settings.database_url,
                clock=clock,
                session_ttl_minutes=settings.session_ttl_minutes,
            )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def _build_proof_cache(settings: Settings, clock: Clock) -> Optional[ProofCache]:
    if not settings.reject_replayed_proofs:
        return None
    if not settings.redis_url:
        logger.warning(
            "proof_cache_process_local",
            message="REJECT_REPLAYED_PROOFS without REDIS_URL only covers this process",
        )
        return MemoryProofCache(clock=clock)
    cache = RedisCache(settings.redis_url)
    try:
        cache.verify_connection()
    except Exception as exc:
        if not settings.test_mode:
            raise RuntimeError(
                "Redis is required to reject replayed proofs; start Redis or unset "
                "REJECT_REPLAYED_PROOFS."
            ) from exc
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(exc),
        )
        return MemoryProofCache(clock=clock)
    return cache


class Runtime:
    """Service graph for one application instance.

    Built once at startup (or by a test) and handed to the app; nothing here
    is module-global, so several runtimes can coexist in one process.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Store] = None,
        identity: Optional[IdentityProviderClient] = None,
        clock: Optional[Clock] = None,
        proof_cache: Optional[ProofCache] = None,
    ) -> None:
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        self.store: Store = store or _build_store(settings, self.clock)
        self.identity: IdentityProviderClient = identity or GitHubIdentityClient(
            settings.github_client_id,
            settings.github_client_secret,
            user_agent=settings.github_user_agent,
            timeout=settings.identity_timeout_seconds,
        )
        if proof_cache is None:
            proof_cache = _build_proof_cache(settings, self.clock)
        self.proof_cache = proof_cache
        self.replay_guard = ReplayGuard(self.clock, proof_cache=proof_cache)

        self.token_grants = TokenGrantOrchestrator(
            self.store,
            self.identity,
            self.replay_guard,
            allowed_logins=settings.allowed_logins,
            allow_reactivation=settings.reactivate_revoked_tokens,
        )
        self.session_grants = SessionGrantOrchestrator(
            self.store, self.identity, self.replay_guard
        )
        self.authenticator = SessionAuthenticator(self.store)
        self.revocation = RevocationService(self.store)
        logger.info(
            "runtime_init_complete",
            allow_list_size=len(settings.allowed_logins),
            replay_cache=type(proof_cache).__name__ if proof_cache else None,
        )

    async def close(self) -> None:
        if isinstance(self.proof_cache, RedisCache):
            await self.proof_cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
