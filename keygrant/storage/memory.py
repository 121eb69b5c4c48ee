from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from keygrant.clock import Clock, SystemClock
from keygrant.logging import get_logger
from keygrant.storage.errors import ConstraintViolation
from keygrant.storage.models import (
    ExternalIdentity,
    Session,
    Token,
    TokenTransition,
    apply_token_grant,
)


class MemoryStore:
    """In-process token and session store for tests and single-node development.

    When ``state_path`` is set, every write is flushed to a JSON file and
    reloaded on start.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        session_ttl_minutes: int = 60 * 24,
        state_path: Optional[str] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.clock: Clock = clock or SystemClock()
        self.session_ttl_minutes = session_ttl_minutes
        self.tokens: Dict[str, Token] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self._load_state()

    # tokens
    def upsert_token(
        self,
        token_id: str,
        identity_id: str,
        credential: str,
        *,
        allow_reactivation: bool = True,
    ) -> tuple[Optional[Token], TokenTransition]:
        with self._data_lock:
            token, transition = apply_token_grant(
                self.tokens.get(token_id),
                token_id,
                identity_id,
                credential,
                now=self.clock.now(),
                allow_reactivation=allow_reactivation,
            )
            if token is None:
                return None, transition
            self.tokens[token_id] = token
            self._persist_state()
            return replace(token), transition

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return replace(token) if token else None

    def get_active_token(self, token_id: str) -> Optional[Token]:
        token = self.get_token(token_id)
        if token is None or not token.active:
            return None
        return token

    def list_tokens_for_identity(self, identity_id: str) -> List[Token]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.tokens.values()
                if t.external_identity_id == identity_id
            ]

    def touch_token(self, token_id: str) -> None:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token:
                return
            token.last_used_at = self.clock.now()
            self._persist_state()

    def deactivate_token(self, token_id: str) -> int:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or not token.active:
                return 0
            token.active = False
            self._persist_state()
            return 1

    def deactivate_tokens_for_identity(self, identity_id: str) -> int:
        with self._data_lock:
            affected = [
                t
                for t in self.tokens.values()
                if t.external_identity_id == identity_id and t.active
            ]
            for token in affected:
                token.active = False
            if affected:
                self._persist_state()
            return len(affected)

    # sessions
    def create_session(
        self, session_id: str, token_id: str, identity: ExternalIdentity
    ) -> Session:
        with self._data_lock:
            if token_id not in self.tokens:
                raise ConstraintViolation("session token missing", {"token_id": token_id})
            if session_id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            sess = Session.new(
                session_id,
                token_id,
                identity,
                now=self.clock.now(),
                ttl_minutes=self.session_ttl_minutes,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_valid_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid_at(self.clock.now()):
                return None
            token = self.tokens.get(sess.token_id)
            if not token or not token.active:
                return None
            return sess

    def purge_expired_sessions(self) -> int:
        with self._data_lock:
            now = self.clock.now()
            stale = [sid for sid, s in self.sessions.items() if not s.is_valid_at(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def ping(self) -> bool:
        return True

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            tokens=len(self.tokens),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "external_identity_id": token.external_identity_id,
            "external_credential": token.external_credential,
            "active": token.active,
            "created_at": self._serialize_datetime(token.created_at),
            "last_used_at": self._serialize_datetime(token.last_used_at),
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=data["id"],
            external_identity_id=str(data["external_identity_id"]),
            external_credential=data["external_credential"],
            active=bool(data.get("active", True)),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or self.clock.now(),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "token_id": session.token_id,
            "external_identity_id": session.external_identity_id,
            "external_login": session.external_login,
            "external_display_name": session.external_display_name,
            "created_at": self._serialize_datetime(session.created_at),
            "expiry": self._serialize_datetime(session.expiry),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            token_id=data["token_id"],
            external_identity_id=str(data["external_identity_id"]),
            external_login=data.get("external_login", ""),
            external_display_name=data.get("external_display_name", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            expiry=self._deserialize_datetime(data["expiry"]),
        )


class MemoryProofCache:
    """Single-process stand-in for the Redis seen-proof cache."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    async def claim_proof(self, key: str, ttl_seconds: int) -> bool:
        now_ms = self.clock.now_ms()
        with self._lock:
            expired = [k for k, until in self._seen.items() if until <= now_ms]
            for k in expired:
                self._seen.pop(k, None)
            if key in self._seen:
                return False
            self._seen[key] = now_ms + ttl_seconds * 1000
            return True
