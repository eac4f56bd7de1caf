"""Memory store behaviour, including snapshot persistence across restarts."""

import pytest

from labrecords.storage.errors import ConstraintViolation, StoreUnavailable
from labrecords.storage.memory import MemoryStore
from labrecords.storage.models import VersionedRecord


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _record(owner_id, seq, period="2025", payload=None):
    return VersionedRecord.new(
        owner_id,
        reference=f"{period}-B-{seq:04d}",
        sequence_number=seq,
        period=period,
        payload=payload or {},
    )


class TestIdentities:
    def test_duplicate_username(self, store):
        store.create_identity("alice")
        with pytest.raises(ConstraintViolation):
            store.create_identity("alice")

    def test_returned_identity_is_a_copy(self, store):
        identity = store.create_identity("alice")
        identity.session_version = 99
        assert store.get_session_version(identity.id) == 0

    def test_password_for_unknown_identity(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_state_reloads_from_snapshot(self, tmp_path, store):
        identity = store.create_identity("alice", role="admin", company_name="Lab")
        store.save_password(identity.id, "hash", "argon2id")
        store.bump_session_version(identity.id)
        store.set_identity_active(identity.id, False)

        reloaded = MemoryStore(fs_root=str(tmp_path))
        again = reloaded.get_identity_by_username("alice")
        assert again.role == "admin"
        assert again.session_version == 1
        assert again.is_active is False
        assert reloaded.get_password_record(identity.id) == ("hash", "argon2id")


class TestRecords:
    def test_duplicate_reference_per_owner(self, store):
        owner = store.create_identity("alice")
        store.create_record(_record(owner.id, 1))
        with pytest.raises(ConstraintViolation):
            store.create_record(_record(owner.id, 1))

    def test_same_reference_for_different_owners(self, store):
        alice = store.create_identity("alice")
        bob = store.create_identity("bob")
        store.create_record(_record(alice.id, 1))
        store.create_record(_record(bob.id, 1))
        assert len(store.list_records(alice.id)) == 1
        assert len(store.list_records(bob.id)) == 1

    def test_get_record_is_owner_scoped(self, store):
        alice = store.create_identity("alice")
        bob = store.create_identity("bob")
        record = store.create_record(_record(alice.id, 1))
        assert store.get_record(record.id, owner_id=alice.id) is not None
        assert store.get_record(record.id, owner_id=bob.id) is None

    def test_list_newest_sequence_first(self, store):
        owner = store.create_identity("alice")
        for seq in (1, 3, 2):
            store.create_record(_record(owner.id, seq))
        store.create_record(_record(owner.id, 9, period="2024"))
        refs = [r.reference for r in store.list_records(owner.id)]
        assert refs == ["2025-B-0003", "2025-B-0002", "2025-B-0001", "2024-B-0009"]

    def test_conditional_update_and_delete(self, store):
        owner = store.create_identity("alice")
        record = store.create_record(_record(owner.id, 1))

        assert store.conditional_update(record.id, 1, {"x": 1}) is None
        updated = store.conditional_update(record.id, 0, {"x": 1}, updated_by=owner.id)
        assert updated.version == 1
        assert updated.updated_by == owner.id

        assert store.delete_record(record.id, owner_id=owner.id) is True
        assert store.delete_record(record.id, owner_id=owner.id) is False

    def test_records_and_counters_reload(self, tmp_path, store):
        owner = store.create_identity("alice")
        record = store.create_record(_record(owner.id, 1, payload={"slump": 80}))
        store.increment_counter("k")
        store.increment_counter("k")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_record(record.id).payload == {"slump": 80}
        assert reloaded.get_counter("k") == 2
        assert reloaded.increment_counter("k") == 3


class TestSnapshotFailure:
    """A mutation whose snapshot cannot be written leaves no trace in memory."""

    @pytest.fixture
    def broken(self, tmp_path, store, monkeypatch):
        # writing to a directory path raises IsADirectoryError
        def fail():
            monkeypatch.setattr(store, "_state_path", lambda: tmp_path)

        return fail

    def test_session_version_bump_is_rolled_back(self, store, broken):
        identity = store.create_identity("alice")
        broken()
        with pytest.raises(StoreUnavailable):
            store.bump_session_version(identity.id)
        assert store.get_session_version(identity.id) == 0

    def test_conditional_update_is_rolled_back(self, store, broken):
        owner = store.create_identity("alice")
        record = store.create_record(_record(owner.id, 1, payload={"slump": 80}))
        broken()
        with pytest.raises(StoreUnavailable):
            store.conditional_update(record.id, 0, {"slump": 120}, updated_by="editor")
        current = store.get_record(record.id)
        assert current.version == 0
        assert current.payload == {"slump": 80}
        assert current.updated_by == owner.id

    def test_counter_increment_is_rolled_back(self, store, broken):
        assert store.increment_counter("k") == 1
        broken()
        with pytest.raises(StoreUnavailable):
            store.increment_counter("k")
        with pytest.raises(StoreUnavailable):
            store.increment_counter("fresh")
        assert store.get_counter("k") == 1
        assert store.get_counter("fresh") == 0
        assert "fresh" not in store.counters

    def test_create_and_delete_are_rolled_back(self, store, broken):
        owner = store.create_identity("alice")
        kept = store.create_record(_record(owner.id, 1))
        broken()
        with pytest.raises(StoreUnavailable):
            store.create_record(_record(owner.id, 2))
        with pytest.raises(StoreUnavailable):
            store.delete_record(kept.id)
        with pytest.raises(StoreUnavailable):
            store.create_identity("bob")
        assert [r.id for r in store.list_records(owner.id)] == [kept.id]
        assert store.get_identity_by_username("bob") is None

    def test_identity_changes_are_rolled_back(self, store, broken):
        identity = store.create_identity("alice")
        store.save_password(identity.id, "hash", "argon2id")
        broken()
        with pytest.raises(StoreUnavailable):
            store.set_identity_active(identity.id, False)
        with pytest.raises(StoreUnavailable):
            store.save_password(identity.id, "other", "argon2id")
        with pytest.raises(StoreUnavailable):
            store.touch_last_login(identity.id)
        current = store.get_identity(identity.id)
        assert current.is_active is True
        assert current.last_login_at is None
        assert store.get_password_record(identity.id) == ("hash", "argon2id")
