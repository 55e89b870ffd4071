from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from gatehouse.logging import get_logger
from gatehouse.service.errors import TransientStoreError
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import PrivateEventToken, Session, User

_OWNED_TABLES_DDL = (
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        uuid UUID PRIMARY KEY,
        user_id INTEGER NOT NULL,
        refresh_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        superseded_by UUID,
        rotated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS private_event_token (
        event_id INTEGER NOT NULL,
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (event_id, token)
    )
    """,
)

# Owned by the user and event subsystems; only read or narrowly updated here
_COLLABORATOR_TABLES = ("app_user", "event")


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except psycopg.OperationalError as exc:
        get_logger(__name__).error(
            "database_unavailable", operation=operation, error=str(exc)
        )
        raise TransientStoreError() from exc


def _session_from_row(row: Dict[str, Any]) -> Session:
    superseded_by = row.get("superseded_by")
    return Session(
        uuid=str(row["uuid"]),
        user_id=int(row["user_id"]),
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        is_blocked=bool(row["is_blocked"]),
        created_at=row["created_at"],
        superseded_by=str(superseded_by) if superseded_by else None,
        rotated_at=row.get("rotated_at"),
    )


class PostgresStore:
    """Postgres-backed session and invite tables plus the collaborator lookups.

    Uses an async pool so a cancelled request cancels its in-flight query.
    Call :meth:`open` from within the running event loop before use.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    def _connect(self):
        return self.pool.connection()

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_owned_tables()
        await self._verify_required_schema()

    async def close(self) -> None:
        await self.pool.close()

    async def _ensure_owned_tables(self) -> None:
        """Create ``auth_session`` and ``private_event_token`` if missing."""

        with _store_errors("ensure_schema"):
            async with self._connect() as conn:
                for statement in _OWNED_TABLES_DDL:
                    await conn.execute(statement)

    async def _verify_required_schema(self) -> None:
        with _store_errors("verify_schema"):
            async with self._connect() as conn:
                missing = []
                for table in _COLLABORATOR_TABLES:
                    cur = await conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    )
                    row = await cur.fetchone()
                    if not row or not row.get("oid"):
                        missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    async def ping(self) -> bool:
        with _store_errors("ping"):
            async with self._connect() as conn:
                cur = await conn.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        return bool(row and row.get("ok") == 1)

    # users / events -----------------------------------------------------

    async def get_user_by_email(self, email: str) -> Optional[User]:
        with _store_errors("get_user_by_email"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "SELECT id, email, password_hash, is_admin, created_at FROM app_user WHERE lower(email) = lower(%s)",
                    (email.strip(),),
                )
                row = await cur.fetchone()
        return User(**row) if row else None

    async def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with _store_errors("update_password_hash"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "UPDATE app_user SET password_hash = %s WHERE id = %s",
                    (password_hash, user_id),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("user not found", {"user_id": user_id})

    async def get_event_owner(self, event_id: int) -> Optional[int]:
        with _store_errors("get_event_owner"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "SELECT owner_id FROM event WHERE id = %s", (event_id,)
                )
                row = await cur.fetchone()
        return int(row["owner_id"]) if row else None

    # sessions -----------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        try:
            with _store_errors("create_session"):
                async with self._connect() as conn:
                    await conn.execute(
                        """
                        INSERT INTO auth_session (uuid, user_id, refresh_token, expires_at, is_blocked, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            session.uuid,
                            session.user_id,
                            session.refresh_token,
                            session.expires_at,
                            session.is_blocked,
                            session.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"uuid": session.uuid})
        return session

    async def get_session(self, session_uuid: str) -> Optional[Session]:
        with _store_errors("get_session"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "SELECT * FROM auth_session WHERE uuid = %s", (session_uuid,)
                )
                row = await cur.fetchone()
        return _session_from_row(row) if row else None

    async def rotate_session(self, old_uuid: str, new_session: Session) -> bool:
        """Supersede ``old_uuid`` with ``new_session`` in one transaction.

        Returns False without writing when the old row is no longer active,
        which is how a concurrent second rotation of the same row loses.
        """
        try:
            with _store_errors("rotate_session"):
                async with self._connect() as conn:
                    cur = await conn.execute(
                        """
                        UPDATE auth_session
                           SET superseded_by = %s, rotated_at = now()
                         WHERE uuid = %s
                           AND superseded_by IS NULL
                           AND NOT is_blocked
                           AND expires_at > now()
                        """,
                        (new_session.uuid, old_uuid),
                    )
                    if cur.rowcount == 0:
                        return False
                    await conn.execute(
                        """
                        INSERT INTO auth_session (uuid, user_id, refresh_token, expires_at, is_blocked, created_at)
                        VALUES (%s, %s, %s, %s, FALSE, %s)
                        """,
                        (
                            new_session.uuid,
                            new_session.user_id,
                            new_session.refresh_token,
                            new_session.expires_at,
                            new_session.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists", {"uuid": new_session.uuid}
            )
        return True

    async def block_session(self, session_uuid: str) -> bool:
        with _store_errors("block_session"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "UPDATE auth_session SET is_blocked = TRUE WHERE uuid = %s",
                    (session_uuid,),
                )
                return cur.rowcount > 0

    async def block_user_sessions(self, user_id: int) -> int:
        with _store_errors("block_user_sessions"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    """
                    UPDATE auth_session SET is_blocked = TRUE
                     WHERE user_id = %s AND NOT is_blocked AND superseded_by IS NULL
                    """,
                    (user_id,),
                )
                return cur.rowcount

    # private invites ----------------------------------------------------

    async def create_private_event_token(self, token: PrivateEventToken) -> PrivateEventToken:
        try:
            with _store_errors("create_private_event_token"):
                async with self._connect() as conn:
                    await conn.execute(
                        """
                        INSERT INTO private_event_token (event_id, token, expires_at, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (token.event_id, token.token, token.expires_at, token.created_at),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("event missing", {"event_id": token.event_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("invite already exists", {"event_id": token.event_id})
        return token

    async def get_private_event_token(
        self, event_id: int, token: str
    ) -> Optional[PrivateEventToken]:
        with _store_errors("get_private_event_token"):
            async with self._connect() as conn:
                cur = await conn.execute(
                    "SELECT event_id, token, expires_at, created_at FROM private_event_token WHERE event_id = %s AND token = %s",
                    (event_id, token),
                )
                row = await cur.fetchone()
        return PrivateEventToken(**row) if row else None
