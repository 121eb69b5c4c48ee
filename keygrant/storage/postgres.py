from __future__ import annotations

from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from keygrant.clock import Clock, SystemClock
from keygrant.logging import get_logger
from keygrant.storage.errors import ConstraintViolation, SchemaMissing
from keygrant.storage.models import (
    ExternalIdentity,
    Session,
    Token,
    TokenTransition,
    apply_token_grant,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS token (
        id TEXT PRIMARY KEY CHECK (id ~ '^[0-9a-f]{64}$'),
        external_identity_id TEXT NOT NULL,
        external_credential TEXT NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_external_identity_idx ON token (external_identity_id)",
    """
    CREATE TABLE IF NOT EXISTS session (
        id TEXT PRIMARY KEY,
        token_id TEXT NOT NULL REFERENCES token (id),
        external_identity_id TEXT NOT NULL,
        external_login TEXT NOT NULL,
        external_display_name TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expiry TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_expiry_idx ON session (expiry)",
    "CREATE OR REPLACE VIEW valid_token AS SELECT * FROM token WHERE active",
    """
    CREATE OR REPLACE VIEW valid_session AS
        SELECT s.*
        FROM session s
        JOIN token t ON t.id = s.token_id
        WHERE t.active AND s.expiry > now()
    """,
)

REQUIRED_RELATIONS = ("token", "session", "valid_token", "valid_session")


class PostgresStore:
    """Postgres-backed token and session store.

    Validity of sessions is decided by the ``valid_session`` view, so expiry
    and token activity are always judged on database time.
    """

    def __init__(
        self,
        dsn: str,
        *,
        clock: Optional[Clock] = None,
        session_ttl_minutes: int = 60 * 24,
    ) -> None:
        self.dsn = dsn
        self.clock: Clock = clock or SystemClock()
        self.session_ttl_minutes = session_ttl_minutes
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for relation in REQUIRED_RELATIONS:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{relation}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(relation)
        if missing:
            raise SchemaMissing(
                "Missing required Postgres relations: {}".format(", ".join(missing))
            )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> Token:
        return Token(
            id=row["id"],
            external_identity_id=str(row["external_identity_id"]),
            external_credential=row["external_credential"],
            active=bool(row["active"]),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            token_id=row["token_id"],
            external_identity_id=str(row["external_identity_id"]),
            external_login=row["external_login"],
            external_display_name=row.get("external_display_name") or "",
            created_at=row["created_at"],
            expiry=row["expiry"],
        )

    # tokens
    def upsert_token(
        self,
        token_id: str,
        identity_id: str,
        credential: str,
        *,
        allow_reactivation: bool = True,
    ) -> tuple[Optional[Token], TokenTransition]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
            existing = self._row_to_token(row) if row else None
            token, transition = apply_token_grant(
                existing,
                token_id,
                identity_id,
                credential,
                now=self.clock.now(),
                allow_reactivation=allow_reactivation,
            )
            if token is None:
                return None, transition
            # concurrent first inits for one key both miss the row lock; last write wins
            saved = conn.execute(
                """
                INSERT INTO token (id, external_identity_id, external_credential, active, created_at)
                VALUES (%s, %s, %s, TRUE, %s)
                ON CONFLICT (id) DO UPDATE SET
                    external_identity_id = EXCLUDED.external_identity_id,
                    external_credential = EXCLUDED.external_credential,
                    active = TRUE
                RETURNING *
                """,
                (
                    token.id,
                    token.external_identity_id,
                    token.external_credential,
                    token.created_at,
                ),
            ).fetchone()
        return self._row_to_token(saved), transition

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM token WHERE id = %s", (token_id,)).fetchone()
        return self._row_to_token(row) if row else None

    def get_active_token(self, token_id: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM valid_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_tokens_for_identity(self, identity_id: str) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM token WHERE external_identity_id = %s ORDER BY created_at",
                (identity_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def touch_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE token SET last_used_at = now() WHERE id = %s", (token_id,)
            )

    def deactivate_token(self, token_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE token SET active = FALSE WHERE id = %s AND active",
                (token_id,),
            )
            return result.rowcount

    def deactivate_tokens_for_identity(self, identity_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE token SET active = FALSE WHERE external_identity_id = %s AND active",
                (identity_id,),
            )
            return result.rowcount

    # sessions
    def create_session(
        self, session_id: str, token_id: str, identity: ExternalIdentity
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO session (id, token_id, external_identity_id, external_login,
                                         external_display_name, created_at, expiry)
                    VALUES (%s, %s, %s, %s, %s, now(), now() + make_interval(mins => %s))
                    RETURNING *
                    """,
                    (
                        session_id,
                        token_id,
                        identity.id,
                        identity.login,
                        identity.display_name,
                        self.session_ttl_minutes,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session token missing", {"token_id": token_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id already exists", {"field": "id"})
        return self._row_to_session(row)

    def get_valid_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM valid_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM session WHERE expiry <= now()")
            return result.rowcount

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()
