from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from farmauth.logging import get_logger
from farmauth.storage.errors import ConstraintViolation
from farmauth.storage.models import Account, Location, Marketplace

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    phone TEXT UNIQUE,
    email TEXT UNIQUE,
    location JSONB NOT NULL DEFAULT '{}'::jsonb,
    marketplace JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    refresh_token TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (phone IS NOT NULL OR email IS NOT NULL)
)
"""


class PostgresStore:
    """Postgres-backed account store.

    The refresh slot swap is a single conditional UPDATE, so concurrent
    rotations against one account have exactly one winner even across
    server instances.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        for name in ("phone", "email"):
            if name in constraint:
                return name
        return None

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        def _json(value: Any) -> Optional[dict]:
            if isinstance(value, str):
                return json.loads(value)
            return value

        return Account(
            id=str(row["id"]),
            name=row["name"],
            phone=row.get("phone"),
            email=row.get("email"),
            location=Location.from_dict(_json(row.get("location"))),
            marketplace=Marketplace.from_dict(_json(row.get("marketplace"))),
            is_verified=bool(row.get("is_verified", False)),
            refresh_token=row.get("refresh_token"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    def find_by_identifier(self, identifier: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE phone = %s OR email = %s LIMIT 1",
                (identifier, identifier),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, name, phone, email, location, marketplace,
                        is_verified, refresh_token, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.name,
                        account.phone,
                        account.email,
                        json.dumps(account.location.to_dict()),
                        json.dumps(account.marketplace.to_dict()),
                        account.is_verified,
                        account.refresh_token,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(
                f"{field or 'account'} already registered", field=field
            ) from exc
        self.logger.info("account_created", account_id=account.id)
        return account

    def save_account(self, account: Account) -> Account:
        account.updated_at = datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE account
                    SET name = %s, phone = %s, email = %s, location = %s,
                        marketplace = %s, is_verified = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        account.name,
                        account.phone,
                        account.email,
                        json.dumps(account.location.to_dict()),
                        json.dumps(account.marketplace.to_dict()),
                        account.is_verified,
                        account.updated_at,
                        account.id,
                    ),
                )
                if cur.rowcount == 0:
                    raise KeyError(account.id)
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(
                f"{field or 'account'} already registered", field=field
            ) from exc
        return account

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE account SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (token, account_id),
            )
            return cur.rowcount > 0

    def swap_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account SET refresh_token = %s, updated_at = now()
                WHERE id = %s AND refresh_token = %s
                """,
                (new, account_id, expected),
            )
            return cur.rowcount == 1

    def close(self) -> None:
        self.pool.close()
