from __future__ import annotations

import contextlib
import threading
import uuid
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from agrigrow.logging import get_logger
from agrigrow.storage.errors import ConstraintViolation, StorageUnavailable
from agrigrow.storage.memory import normalize_email
from agrigrow.storage.models import (
    ACCOUNT_ROLES,
    DEFAULT_ROLE,
    LOCATION_FIELDS,
    Account,
    Location,
)

_ROLE_CHECK = ", ".join(f"'{role}'" for role in ACCOUNT_ROLES)

_SCHEMA_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT '{DEFAULT_ROLE}'
            CHECK (role IN ({_ROLE_CHECK})),
        phone TEXT,
        location_address TEXT,
        location_city TEXT,
        location_country TEXT,
        profile_image TEXT,
        date_joined TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_key ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account (id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
)

# Profile fields mapped to their columns; location is flattened into three columns
_PROFILE_COLUMNS = {
    "name": "name",
    "phone": "phone",
    "profile_image": "profile_image",
}


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str, *, connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=connect_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database connection error") from exc

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
            self._schema_ready = True
            self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        location = Location(
            address=row.get("location_address"),
            city=row.get("location_city"),
            country=row.get("location_country"),
        )
        return Account(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            role=row["role"],
            phone=row.get("phone"),
            location=None if location.is_empty() else location,
            profile_image=row.get("profile_image"),
            date_joined=row["date_joined"],
        )

    def create_account(
        self,
        email: str,
        name: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = DEFAULT_ROLE,
    ) -> Account:
        self._ensure_schema()
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, name, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, normalize_email(email), name, role),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        self._ensure_schema()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        self._ensure_schema()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        self._ensure_schema()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def update_account(self, account_id: str, changes: Dict[str, Any]) -> Optional[Account]:
        """Apply a partial profile update as a single ``UPDATE ... RETURNING``."""
        self._ensure_schema()
        assignments: List[sql.Composable] = []
        params: List[Any] = []
        for key, value in changes.items():
            if key == "location":
                for sub_key, sub_value in (value or {}).items():
                    if sub_key in LOCATION_FIELDS:
                        assignments.append(
                            sql.SQL("{} = %s").format(sql.Identifier(f"location_{sub_key}"))
                        )
                        params.append(sub_value)
            elif key in _PROFILE_COLUMNS:
                assignments.append(
                    sql.SQL("{} = %s").format(sql.Identifier(_PROFILE_COLUMNS[key]))
                )
                params.append(value)
        if not assignments:
            return self.get_account(account_id)
        query = sql.SQL("UPDATE account SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        with self._connect() as conn:
            row = conn.execute(query, (*params, account_id)).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        self._ensure_schema()
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s WHERE id = %s RETURNING *",
                (role, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, limit: int = 100) -> List[Account]:
        self._ensure_schema()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY date_joined DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_account(row) for row in rows]
