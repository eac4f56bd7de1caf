from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Union

from labrecords.logging import get_logger
from labrecords.storage.models import VersionedRecord

logger = get_logger(__name__)


class GuardedStore(Protocol):
    def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        payload: Dict[str, Any],
        *,
        owner_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[VersionedRecord]: ...

    def get_record(
        self, record_id: str, *, owner_id: Optional[str] = None
    ) -> Optional[VersionedRecord]: ...


@dataclass(frozen=True)
class WriteAccepted:
    record: VersionedRecord


@dataclass(frozen=True)
class WriteConflict:
    """The stored version moved on; ``latest`` is the authoritative copy."""

    latest: VersionedRecord


@dataclass(frozen=True)
class WriteNotFound:
    record_id: str


WriteResult = Union[WriteAccepted, WriteConflict, WriteNotFound]


class ConcurrencyGuard:
    """Optimistic write: apply only when the caller saw the latest version."""

    def __init__(self, store: GuardedStore) -> None:
        self.store = store

    def write(
        self,
        record_id: str,
        expected_version: int,
        payload: Dict[str, Any],
        *,
        owner_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> WriteResult:
        updated = self.store.conditional_update(
            record_id,
            expected_version,
            payload,
            owner_id=owner_id,
            updated_by=actor_id,
        )
        if updated is not None:
            logger.info(
                "record_version_accepted",
                record_id=record_id,
                version=updated.version,
                actor_id=actor_id,
            )
            return WriteAccepted(updated)

        # zero rows matched: tell a stale version apart from a missing record
        latest = self.store.get_record(record_id, owner_id=owner_id)
        if latest is None:
            return WriteNotFound(record_id)
        logger.info(
            "record_version_conflict",
            record_id=record_id,
            expected_version=expected_version,
            latest_version=latest.version,
            actor_id=actor_id,
        )
        return WriteConflict(latest)
