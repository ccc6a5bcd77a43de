from __future__ import annotations

from datetime import datetime

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from flashdeck.logging import get_logger
from flashdeck.storage.errors import ConstraintViolation, ProfileNotFound, StoreError


class PostgresProfileStore:
    """Profile reads and soft-delete writes against the ``profiles`` table.

    Only ``user_id``, ``is_deleted``, ``deleted_at`` and ``updated_at`` are
    touched; the rest of the row belongs to other services.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
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
        """Ensure the profile columns exist before serving requests."""

        required = {"user_id", "is_deleted", "deleted_at", "updated_at"}
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT column_name FROM information_schema.columns
                WHERE table_name = 'profiles'
                """
            ).fetchall()
        present = {row["column_name"] for row in rows}
        missing = sorted(required - present)
        if missing:
            self.logger.error("profiles_schema_incomplete", missing=missing)
            raise RuntimeError(f"profiles table is missing columns: {', '.join(missing)}")

    def create_profile(self, user_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles (user_id, is_deleted, updated_at)
                    VALUES (%s, FALSE, now())
                    """,
                    (user_id,),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("profile already exists", {"user_id": user_id}) from exc
        except errors.Error as exc:
            self.logger.error("profile_create_failed", user_id=user_id, error=str(exc))
            raise StoreError("profile create failed", {"user_id": user_id}) from exc

    def get_is_deleted(self, user_id: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT is_deleted FROM profiles WHERE user_id = %s", (user_id,)
                ).fetchone()
        except errors.Error as exc:
            self.logger.error("profile_read_failed", user_id=user_id, error=str(exc))
            raise StoreError("profile read failed", {"user_id": user_id}) from exc
        if not row:
            raise ProfileNotFound("profile not found", {"user_id": user_id})
        return bool(row["is_deleted"])

    def mark_deleted(self, user_id: str, deleted_at: datetime) -> None:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE profiles
                    SET is_deleted = TRUE, deleted_at = %s, updated_at = now()
                    WHERE user_id = %s
                    """,
                    (deleted_at, user_id),
                )
                if cur.rowcount == 0:
                    raise ProfileNotFound("profile not found", {"user_id": user_id})
        except errors.Error as exc:
            self.logger.error("profile_soft_delete_failed", user_id=user_id, error=str(exc))
            raise StoreError("profile update failed", {"user_id": user_id}) from exc

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresProfileStore"]
