"""Record service: reference allocation, owner scoping and guarded updates."""

import pytest

from labrecords.config import Settings
from labrecords.service.concurrency import WriteAccepted, WriteConflict, WriteNotFound
from labrecords.service.errors import BadRequestError, ConflictError, RecordNotFound
from labrecords.service.records import RecordService
from labrecords.service.sequence import SequenceAllocator, current_period
from labrecords.storage.memory import MemoryStore
from labrecords.storage.models import VersionedRecord


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def records(store):
    settings = Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")
    return RecordService(store, SequenceAllocator(store, settings))


@pytest.fixture
def owner(store):
    return store.create_identity("owner")


class TestCreate:
    def test_references_follow_owner_and_period(self, records, store, owner):
        other = store.create_identity("other")
        first = records.create(owner.id, {}, period="2025")
        second = records.create(owner.id, {}, period="2025")
        other_first = records.create(other.id, {}, period="2025")
        next_year = records.create(owner.id, {}, period="2026")

        assert first.reference == "2025-B-0001"
        assert second.reference == "2025-B-0002"
        assert other_first.reference == "2025-B-0001"
        assert next_year.reference == "2026-B-0001"
        assert first.version == 0

    def test_default_period_is_current_year(self, records, owner):
        record = records.create(owner.id, {})
        assert record.period == current_period()
        assert record.reference.startswith(f"{current_period()}-B-")

    def test_derived_fields_are_stored(self, records, owner):
        record = records.create(owner.id, {"slump": 30, "specimens": [{"specimenType": "cube", "diameter": 100}]})
        assert record.payload["consistencyClass"] == "S1"
        assert record.payload["specimenCount"] == 1

    def test_rejected_payload_consumes_no_sequence_value(self, records, owner):
        with pytest.raises(BadRequestError):
            records.create(owner.id, {"specimens": [{"diameter": "inf"}]}, period="2025")
        assert records.create(owner.id, {}, period="2025").reference == "2025-B-0001"

    def test_reference_collision_leaves_a_gap(self, records, store, owner):
        store.create_record(
            VersionedRecord.new(owner.id, reference="2025-B-0001", sequence_number=1, period="2025")
        )
        with pytest.raises(ConflictError):
            records.create(owner.id, {}, period="2025")
        assert records.create(owner.id, {}, period="2025").reference == "2025-B-0002"


class TestReadAndDelete:
    def test_get_is_owner_scoped(self, records, store, owner):
        stranger = store.create_identity("stranger")
        record = records.create(owner.id, {})
        assert records.get(owner.id, record.id).id == record.id
        with pytest.raises(RecordNotFound):
            records.get(stranger.id, record.id)

    def test_delete(self, records, owner):
        record = records.create(owner.id, {})
        records.delete(owner.id, record.id)
        with pytest.raises(RecordNotFound):
            records.delete(owner.id, record.id)

    def test_list_newest_first(self, records, owner):
        for _ in range(3):
            records.create(owner.id, {}, period="2025")
        assert [r.sequence_number for r in records.list(owner.id)] == [3, 2, 1]


class TestUpdate:
    def test_update_returns_tagged_results(self, records, owner):
        record = records.create(owner.id, {"slump": 20})

        accepted = records.update(owner.id, record.id, 0, {"slump": 100})
        assert isinstance(accepted, WriteAccepted)
        assert accepted.record.payload["consistencyClass"] == "S3"

        conflict = records.update(owner.id, record.id, 0, {"slump": 5})
        assert isinstance(conflict, WriteConflict)
        assert conflict.latest.version == 1

        missing = records.update(owner.id, "missing", 0, {})
        assert isinstance(missing, WriteNotFound)
