from __future__ import annotations

import math
from numbers import Real
from typing import Any, Optional, Protocol

from keygrant.clock import Clock, SystemClock
from keygrant.logging import get_logger

# Signed requests are accepted only while the claimed time is this close to ours
REPLAY_WINDOW_MS = 300_000

logger = get_logger(__name__)


class ProofCache(Protocol):
    async def claim_proof(self, key: str, ttl_seconds: int) -> bool: ...


class ReplayGuard:
    """Time-window check for signed requests, with an optional seen-proof cache.

    Without a cache, a captured proof stays usable for the whole window. With
    one, each ``(token_id, scope, t)`` triple is accepted once.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        window_ms: int = REPLAY_WINDOW_MS,
        proof_cache: Optional[ProofCache] = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.window_ms = window_ms
        self.proof_cache = proof_cache

    def in_window(self, claimed_ms: Any, now_ms: Optional[float] = None) -> bool:
        if isinstance(claimed_ms, bool) or not isinstance(claimed_ms, Real):
            return False
        try:
            claimed = float(claimed_ms)
        except OverflowError:
            return False
        if not math.isfinite(claimed):
            return False
        now = self.clock.now_ms() if now_ms is None else now_ms
        return abs(claimed - now) <= self.window_ms

    async def claim(self, token_id: str, scope: str, operand: str) -> bool:
        """Record a verified proof; False if the same proof was already used."""
        if self.proof_cache is None:
            return True
        key = f"proof:{scope}:{token_id}:{operand}"
        # A proof can be presented from t - window up to t + window
        ttl_seconds = max(1, math.ceil(2 * self.window_ms / 1000))
        fresh = await self.proof_cache.claim_proof(key, ttl_seconds)
        if not fresh:
            logger.warning("proof_replayed", token_id=token_id, scope=scope)
        return fresh
