from __future__ import annotations

from typing import Any, Dict, List, Optional

from labrecords.logging import get_logger
from labrecords.service.concurrency import ConcurrencyGuard, WriteResult
from labrecords.service.errors import ConflictError, RecordNotFound
from labrecords.service.sequence import SequenceAllocator, current_period
from labrecords.service.specimens import derive_payload
from labrecords.storage.errors import ConstraintViolation
from labrecords.storage.models import VersionedRecord

logger = get_logger(__name__)


class RecordService:
    """Owner-scoped concrete test records."""

    def __init__(
        self,
        store: Any,
        sequences: SequenceAllocator,
        guard: Optional[ConcurrencyGuard] = None,
    ) -> None:
        self.store = store
        self.sequences = sequences
        self.guard = guard or ConcurrencyGuard(store)

    def create(
        self,
        owner_id: str,
        payload: Dict[str, Any],
        *,
        period: Optional[str] = None,
    ) -> VersionedRecord:
        period = period or current_period()
        # invalid payloads must not consume a sequence value
        derived = derive_payload(payload)
        value, reference = self.sequences.allocate_reference(owner_id, period)
        record = VersionedRecord.new(
            owner_id,
            reference=reference,
            sequence_number=value,
            period=period,
            payload=derived,
        )
        try:
            created = self.store.create_record(record)
        except ConstraintViolation as exc:
            # the allocated value is burnt; the next create gets a fresh one
            logger.warning("record_reference_collision", reference=reference, owner_id=owner_id)
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "record_created",
            record_id=created.id,
            owner_id=owner_id,
            reference=created.reference,
        )
        return created

    def get(self, owner_id: str, record_id: str) -> VersionedRecord:
        record = self.store.get_record(record_id, owner_id=owner_id)
        if not record:
            raise RecordNotFound("record not found", detail={"record_id": record_id})
        return record

    def list(self, owner_id: str, *, limit: int = 100) -> List[VersionedRecord]:
        return self.store.list_records(owner_id, limit=limit)

    def update(
        self,
        owner_id: str,
        record_id: str,
        expected_version: int,
        payload: Dict[str, Any],
        *,
        actor_id: Optional[str] = None,
    ) -> WriteResult:
        return self.guard.write(
            record_id,
            expected_version,
            derive_payload(payload),
            owner_id=owner_id,
            actor_id=actor_id or owner_id,
        )

    def delete(self, owner_id: str, record_id: str) -> None:
        if not self.store.delete_record(record_id, owner_id=owner_id):
            raise RecordNotFound("record not found", detail={"record_id": record_id})
        logger.info("record_deleted", record_id=record_id, owner_id=owner_id)
