from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from labrecords.logging import get_logger
from labrecords.storage.errors import ConstraintViolation, StoreUnavailable
from labrecords.storage.models import Identity, SequenceCounter, VersionedRecord


class MemoryStore:
    """In-memory backing store with JSON snapshots under ``fs_root``.

    Every shared integer (session version, record version, sequence counter)
    is mutated inside a single lock acquisition so each operation is atomic
    with respect to concurrent threads. A mutation whose snapshot cannot be
    written is rolled back and surfaces as ``StoreUnavailable``.
    """

    def __init__(self, fs_root: str = "/tmp/labrecords") -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.records: Dict[str, VersionedRecord] = {}
        self.counters: Dict[str, SequenceCounter] = {}
        # Serializes allocations; the snapshot write also needs _data_lock
        self._seq_lock = threading.Lock()
        # RLock for all other data operations; re-entrant for nested helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _commit(self, rollback: Callable[[], None]) -> None:
        """Persist the snapshot, undoing the in-memory change if that fails."""
        try:
            self._persist_state()
        except StoreUnavailable:
            rollback()
            raise

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # identities
    def create_identity(
        self,
        username: str,
        *,
        role: str = "standard",
        is_active: bool = True,
        company_name: Optional[str] = None,
    ) -> Identity:
        with self._data_lock:
            if any(existing.username == username for existing in self.identities.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            identity = Identity(
                id=str(uuid.uuid4()),
                username=username,
                role=role,
                is_active=is_active,
                company_name=company_name,
            )
            self.identities[identity.id] = identity
            self._commit(lambda: self.identities.pop(identity.id, None))
            return copy.copy(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.copy(identity) if identity else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.username == username), None
            )
            return copy.copy(identity) if identity else None

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            ordered = sorted(self.identities.values(), key=lambda i: i.created_at)
            return [copy.copy(i) for i in ordered[:limit]]

    def _restore_identity(self, previous: Identity) -> None:
        self.identities[previous.id] = previous

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            previous = copy.copy(identity)
            identity.is_active = active
            self._commit(lambda: self._restore_identity(previous))
            return copy.copy(identity)

    def touch_last_login(self, identity_id: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                previous = copy.copy(identity)
                identity.last_login_at = datetime.utcnow()
                self._commit(lambda: self._restore_identity(previous))

    def bump_session_version(self, identity_id: str) -> Optional[int]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            previous = copy.copy(identity)
            identity.session_version += 1
            self._commit(lambda: self._restore_identity(previous))
            return identity.session_version

    def get_session_version(self, identity_id: str) -> Optional[int]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return identity.session_version if identity else None

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            previous = self.credentials.get(identity_id)
            self.credentials[identity_id] = (password_hash, password_algo)

            def rollback() -> None:
                if previous is None:
                    self.credentials.pop(identity_id, None)
                else:
                    self.credentials[identity_id] = previous

            self._commit(rollback)

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(identity_id)

    # records
    def create_record(self, record: VersionedRecord) -> VersionedRecord:
        with self._data_lock:
            if any(
                r.owner_id == record.owner_id and r.reference == record.reference
                for r in self.records.values()
            ):
                raise ConstraintViolation(
                    "reference already exists", {"reference": record.reference}
                )
            stored = copy.deepcopy(record)
            self.records[stored.id] = stored
            self._commit(lambda: self.records.pop(stored.id, None))
            return copy.deepcopy(stored)

    def get_record(
        self, record_id: str, *, owner_id: Optional[str] = None
    ) -> Optional[VersionedRecord]:
        with self._data_lock:
            record = self.records.get(record_id)
            if not record or (owner_id and record.owner_id != owner_id):
                return None
            return copy.deepcopy(record)

    def list_records(self, owner_id: str, limit: int = 100) -> List[VersionedRecord]:
        with self._data_lock:
            owned = [r for r in self.records.values() if r.owner_id == owner_id]
            owned.sort(key=lambda r: (r.period, r.sequence_number), reverse=True)
            return [copy.deepcopy(r) for r in owned[:limit]]

    def _restore_record(self, previous: VersionedRecord) -> None:
        self.records[previous.id] = previous

    def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        payload: Dict[str, Any],
        *,
        owner_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[VersionedRecord]:
        """Apply ``payload`` only if the stored version equals ``expected_version``.

        Returns the updated record, or None when no row matched the filter.
        """
        with self._data_lock:
            record = self.records.get(record_id)
            if (
                not record
                or (owner_id and record.owner_id != owner_id)
                or record.version != expected_version
            ):
                return None
            previous = copy.deepcopy(record)
            record.payload = copy.deepcopy(payload)
            record.version += 1
            record.updated_at = datetime.utcnow()
            record.updated_by = updated_by
            self._commit(lambda: self._restore_record(previous))
            return copy.deepcopy(record)

    def delete_record(self, record_id: str, *, owner_id: Optional[str] = None) -> bool:
        with self._data_lock:
            record = self.records.get(record_id)
            if not record or (owner_id and record.owner_id != owner_id):
                return False
            self.records.pop(record_id, None)
            self._commit(lambda: self._restore_record(record))
            return True

    # sequence counters
    def increment_counter(self, scope_key: str) -> int:
        # Lock order is always _seq_lock then _data_lock
        with self._seq_lock, self._data_lock:
            counter = self.counters.get(scope_key)
            previous = copy.copy(counter) if counter else None
            if counter is None:
                counter = SequenceCounter(scope_key=scope_key)
                self.counters[scope_key] = counter
            counter.last_value += 1
            counter.updated_at = datetime.utcnow()

            def rollback() -> None:
                if previous is None:
                    self.counters.pop(scope_key, None)
                else:
                    self.counters[scope_key] = previous

            self._commit(rollback)
            return counter.last_value

    def get_counter(self, scope_key: str) -> int:
        with self._seq_lock:
            counter = self.counters.get(scope_key)
            return counter.last_value if counter else 0

    def _persist_state(self) -> None:
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "credentials": [
                {
                    "identity_id": identity_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for identity_id, creds in self.credentials.items()
            ],
            "records": [self._serialize_record(r) for r in self.records.values()],
            "counters": [
                {
                    "scope_key": c.scope_key,
                    "last_value": c.last_value,
                    "updated_at": self._serialize_datetime(c.updated_at),
                }
                for c in list(self.counters.values())
            ],
        }
        try:
            self._state_path().write_text(json.dumps(state, indent=2))
        except (OSError, TypeError, ValueError) as exc:
            raise StoreUnavailable(
                "failed to persist in-memory state", {"error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.credentials = {
            entry["identity_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.records = {
            r["id"]: self._deserialize_record(r) for r in data.get("records", [])
        }
        self.counters = {
            c["scope_key"]: SequenceCounter(
                scope_key=c["scope_key"],
                last_value=int(c.get("last_value", 0)),
                updated_at=self._deserialize_datetime(c.get("updated_at"))
                or datetime.utcnow(),
            )
            for c in data.get("counters", [])
        }
        return True

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "username": identity.username,
            "role": identity.role,
            "session_version": identity.session_version,
            "is_active": identity.is_active,
            "company_name": identity.company_name,
            "created_at": self._serialize_datetime(identity.created_at),
            "last_login_at": self._serialize_datetime(identity.last_login_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=str(data["id"]),
            username=data["username"],
            role=data.get("role", "standard"),
            session_version=int(data.get("session_version", 0)),
            is_active=data.get("is_active", True),
            company_name=data.get("company_name"),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_record(self, record: VersionedRecord) -> dict:
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "reference": record.reference,
            "sequence_number": record.sequence_number,
            "period": record.period,
            "version": record.version,
            "payload": record.payload,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "updated_by": record.updated_by,
        }

    def _deserialize_record(self, data: dict) -> VersionedRecord:
        return VersionedRecord(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            reference=data["reference"],
            sequence_number=int(data["sequence_number"]),
            period=str(data["period"]),
            version=int(data.get("version", 0)),
            payload=data.get("payload") or {},
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or datetime.utcnow(),
            updated_by=data.get("updated_by"),
        )
