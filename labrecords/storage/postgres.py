from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from labrecords.logging import get_logger
from labrecords.storage.errors import ConstraintViolation, StoreUnavailable
from labrecords.storage.models import Identity, VersionedRecord


def _is_uuid(value: Any) -> bool:
    # ids arrive from URLs; a non-UUID can never match and would raise in SQL
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store; every counter mutation is a single SQL statement."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the core tables exist before serving requests."""

        required_tables = [
            "lab_identity",
            "identity_credential",
            "test_record",
            "sequence_counter",
        ]

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
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            username=row["username"],
            role=row.get("role", "standard"),
            session_version=int(row.get("session_version", 0)),
            is_active=row.get("is_active", True),
            company_name=row.get("company_name"),
            created_at=row.get("created_at") or datetime.utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> VersionedRecord:
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return VersionedRecord(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            reference=row["reference"],
            sequence_number=int(row["sequence_number"]),
            period=str(row["period"]),
            version=int(row.get("version", 0)),
            payload=payload,
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            updated_by=str(row["updated_by"]) if row.get("updated_by") else None,
        )

    # identities
    def create_identity(
        self,
        username: str,
        *,
        role: str = "standard",
        is_active: bool = True,
        company_name: Optional[str] = None,
    ) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO lab_identity (username, role, is_active, company_name)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, role, is_active, company_name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        if not _is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM lab_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM lab_identity WHERE username = %s", (username,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM lab_identity ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]:
        if not _is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE lab_identity SET is_active = %s WHERE id = %s RETURNING *",
                (active, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def touch_last_login(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE lab_identity SET last_login_at = now() WHERE id = %s",
                (identity_id,),
            )

    def bump_session_version(self, identity_id: str) -> Optional[int]:
        if not _is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE lab_identity
                SET session_version = session_version + 1
                WHERE id = %s
                RETURNING session_version
                """,
                (identity_id,),
            ).fetchone()
        return int(row["session_version"]) if row else None

    def get_session_version(self, identity_id: str) -> Optional[int]:
        if not _is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_version FROM lab_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return int(row["session_version"]) if row else None

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_credential (identity_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (identity_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (identity_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity not found for credentials", {"identity_id": identity_id}
            )

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM identity_credential WHERE identity_id = %s",
                (identity_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # records
    def create_record(self, record: VersionedRecord) -> VersionedRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO test_record (id, owner_id, reference, sequence_number, period,
                                             version, payload, created_at, updated_at, updated_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.owner_id,
                        record.reference,
                        record.sequence_number,
                        record.period,
                        record.version,
                        json.dumps(record.payload),
                        record.created_at,
                        record.updated_at,
                        record.updated_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "reference already exists", {"reference": record.reference}
            )
        return self._record_from_row(row)

    def get_record(
        self, record_id: str, *, owner_id: Optional[str] = None
    ) -> Optional[VersionedRecord]:
        if not _is_uuid(record_id):
            return None
        query = "SELECT * FROM test_record WHERE id = %s"
        params: list[Any] = [record_id]
        if owner_id:
            query += " AND owner_id = %s"
            params.append(owner_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._record_from_row(row) if row else None

    def list_records(self, owner_id: str, limit: int = 100) -> List[VersionedRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM test_record
                WHERE owner_id = %s
                ORDER BY period DESC, sequence_number DESC
                LIMIT %s
                """,
                (owner_id, limit),
            ).fetchall()
        return [self._record_from_row(row) for row in rows]

    def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        payload: Dict[str, Any],
        *,
        owner_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[VersionedRecord]:
        """Filter on id and version and bump the version in one UPDATE."""
        if not _is_uuid(record_id):
            return None
        query = """
            UPDATE test_record
            SET payload = %s,
                version = version + 1,
                updated_at = now(),
                updated_by = %s
            WHERE id = %s AND version = %s
        """
        params: list[Any] = [json.dumps(payload), updated_by, record_id, expected_version]
        if owner_id:
            query += " AND owner_id = %s"
            params.append(owner_id)
        query += " RETURNING *"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._record_from_row(row) if row else None

    def delete_record(self, record_id: str, *, owner_id: Optional[str] = None) -> bool:
        if not _is_uuid(record_id):
            return False
        query = "DELETE FROM test_record WHERE id = %s"
        params: list[Any] = [record_id]
        if owner_id:
            query += " AND owner_id = %s"
            params.append(owner_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount > 0

    # sequence counters
    def increment_counter(self, scope_key: str) -> int:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO sequence_counter (scope_key, last_value, updated_at)
                    VALUES (%s, 1, now())
                    ON CONFLICT (scope_key) DO UPDATE
                    SET last_value = sequence_counter.last_value + 1,
                        updated_at = now()
                    RETURNING last_value
                    """,
                    (scope_key,),
                ).fetchone()
        except psycopg.OperationalError as exc:
            self.logger.error(
                "sequence_counter_unavailable", scope_key=scope_key, error=str(exc)
            )
            raise StoreUnavailable(
                "sequence counter store unavailable", {"scope_key": scope_key}
            ) from exc
        return int(row["last_value"])

    def get_counter(self, scope_key: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_value FROM sequence_counter WHERE scope_key = %s",
                (scope_key,),
            ).fetchone()
        return int(row["last_value"]) if row else 0
