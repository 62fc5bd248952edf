from __future__ import annotations

from dataclasses import asdict, fields
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    USER_MUTABLE_FIELDS,
    OAuthProviderLink,
    Session,
    User,
    utcnow,
)

_USER_COLUMNS = [f.name for f in fields(User)]
_SESSION_COLUMNS = [f.name for f in fields(Session)]
_LINK_COLUMNS = [f.name for f in fields(OAuthProviderLink)]


def _unique_field(exc: errors.UniqueViolation) -> str:
    """Best-effort mapping of a unique-constraint name to the offending field."""

    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for name in ("username", "email", "session_token", "provider_id", "user_id"):
        if name.replace("_", "") in constraint.replace("_", ""):
            return name
    return constraint or "unknown"


class PostgresStore:
    """Postgres-backed durable store for users, sessions and provider links.

    The schema lives in ``sql/001_auth_schema.sql``; this class only checks
    that the tables exist and reads and writes rows against them.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        required_tables = ["app_user", "user_session", "oauth_provider_link"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply the database migrations first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(**{k: row[k] for k in _USER_COLUMNS if k in row})

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(**{k: row[k] for k in _SESSION_COLUMNS if k in row})

    @staticmethod
    def _link_from_row(row: dict) -> OAuthProviderLink:
        return OAuthProviderLink(**{k: row[k] for k in _LINK_COLUMNS if k in row})

    # users
    @staticmethod
    def _insert_user(conn, user: User) -> None:
        values = asdict(user)
        conn.execute(
            "INSERT INTO app_user ({}) VALUES ({})".format(
                ", ".join(_USER_COLUMNS), ", ".join(["%s"] * len(_USER_COLUMNS))
            ),
            tuple(values[c] for c in _USER_COLUMNS),
        )

    @staticmethod
    def _insert_link(conn, link: OAuthProviderLink) -> None:
        values = asdict(link)
        conn.execute(
            "INSERT INTO oauth_provider_link ({}) VALUES ({})".format(
                ", ".join(_LINK_COLUMNS), ", ".join(["%s"] * len(_LINK_COLUMNS))
            ),
            tuple(values[c] for c in _LINK_COLUMNS),
        )

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                self._insert_user(conn, user)
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def create_user_with_provider(
        self, user: User, link: OAuthProviderLink
    ) -> Tuple[User, OAuthProviderLink]:
        link.user_id = user.id
        try:
            # One transaction: both rows land or neither does
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_user(conn, user)
                    self._insert_link(conn, link)
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user, link

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where} = %s LIMIT 1", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username_lower", username.strip().lower())

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email_lower", email.strip().lower())

    def get_user_by_verification_token(self, token_digest: str) -> Optional[User]:
        return self._fetch_user("email_verification_token", token_digest)

    def get_user_by_reset_token(self, token_digest: str) -> Optional[User]:
        return self._fetch_user("password_reset_token", token_digest)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = %s" for column in changes)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*changes.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row) if row else None

    def increment_failed_logins(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (user_id,),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def increment_suspicious_activity(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET suspicious_activity_count = suspicious_activity_count + 1,
                    last_suspicious_activity = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING suspicious_activity_count
                """,
                (at, user_id),
            ).fetchone()
        return int(row["suspicious_activity_count"]) if row else 0

    # sessions
    def create_session(self, session: Session) -> Session:
        values = asdict(session)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO user_session ({}) VALUES ({})".format(
                        ", ".join(_SESSION_COLUMNS), ", ".join(["%s"] * len(_SESSION_COLUMNS))
                    ),
                    tuple(values[c] for c in _SESSION_COLUMNS),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "session_token"})
        return session

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE session_token = %s", (session_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_token: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_session SET last_used_at = %s WHERE session_token = %s",
                (at, session_token),
            )
            return cur.rowcount > 0

    def update_session_expiry(
        self, session_token: str, expires_at: datetime, last_used_at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET expires_at = %s, last_used_at = %s
                WHERE session_token = %s
                RETURNING *
                """,
                (expires_at, last_used_at, session_token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_session WHERE session_token = %s", (session_token,)
            )
            return cur.rowcount > 0

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_session WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # provider links
    def get_provider_link(self, provider: str, provider_id: str) -> Optional[OAuthProviderLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_provider_link WHERE provider = %s AND provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def get_user_provider_link(self, user_id: str, provider: str) -> Optional[OAuthProviderLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_provider_link WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def create_provider_link(self, link: OAuthProviderLink) -> OAuthProviderLink:
        try:
            with self._connect() as conn:
                self._insert_link(conn, link)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("link user missing", {"user_id": link.user_id})
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation("provider link already exists", {"field": field})
        return link

    def update_provider_link_email(self, link_id: str, email: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE oauth_provider_link SET email = %s WHERE id = %s", (email, link_id)
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()
