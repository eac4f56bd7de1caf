"""Reload / force-overwrite resolution of 409 responses."""

import pytest
from fastapi.testclient import TestClient

from labrecords import app as app_module
from labrecords.client.api import LabRecordsClient, WriteAccepted, WriteConflict, WriteNotFound
from labrecords.client.conflict import ConflictResolutionFlow
from labrecords.service.runtime import get_runtime
from conftest import STANDARD_PASSWORD, STANDARD_USERNAME


@pytest.fixture
def client(standard_identity):
    client = LabRecordsClient(TestClient(app_module.app))
    client.login(STANDARD_USERNAME, STANDARD_PASSWORD)
    return client


def _specimens(count):
    return [{"specimenType": "cylindre", "diameter": 160} for _ in range(count)]


@pytest.fixture
def conflicted(client):
    """A record saved at version 1 by someone else while we still edit version 0."""
    record = client.create_record({"specimens": _specimens(3)})
    runtime = get_runtime()
    colleague = runtime.auth.provision("colleague", "Colleague123!")
    runtime.store.conditional_update(
        record["id"], 0, {"specimens": _specimens(4)}, updated_by=colleague.id
    )

    local = {"specimens": _specimens(5)}
    result = client.update_record(record["id"], 0, local)
    assert isinstance(result, WriteConflict)
    return record, local, result


class TestSummary:
    def test_summary_from_other_user(self, client, conflicted):
        _, local, conflict = conflicted
        flow = ConflictResolutionFlow(client, conflict, local)

        summary = flow.summary()
        assert summary.server_version == 1
        assert summary.server_specimen_count == 4
        assert summary.local_specimen_count == 5
        assert summary.modified_by_self is False
        assert summary.modifier_label == "another user"

    def test_summary_from_same_user(self, client):
        record = client.create_record({})
        assert isinstance(client.update_record(record["id"], 0, {"a": 1}), WriteAccepted)

        conflict = client.update_record(record["id"], 0, {"a": 2})
        summary = ConflictResolutionFlow(client, conflict, {"a": 2}).summary()
        assert summary.modified_by_self is True
        assert summary.modifier_label == "you, on another device"


class TestResolution:
    def test_reload_adopts_server_copy(self, client, conflicted):
        _, local, conflict = conflicted
        flow = ConflictResolutionFlow(client, conflict, local)

        latest = flow.reload()
        assert latest["version"] == 1
        assert len(flow.local_payload["specimens"]) == 4

    def test_force_overwrite_bumps_version(self, client, conflicted):
        record, local, conflict = conflicted
        flow = ConflictResolutionFlow(client, conflict, local)

        result = flow.force_overwrite()
        assert isinstance(result, WriteAccepted)
        assert result.record["version"] == 2
        assert client.get_record(record["id"])["payload"]["specimenCount"] == 5

    def test_force_overwrite_hits_another_conflict(self, client, conflicted):
        record, local, conflict = conflicted
        flow = ConflictResolutionFlow(client, conflict, local)
        get_runtime().store.conditional_update(record["id"], 1, {"specimens": []})

        result = flow.force_overwrite()
        assert isinstance(result, WriteConflict)
        assert flow.conflict is result
        assert flow.summary().server_version == 2

        assert isinstance(flow.force_overwrite(), WriteAccepted)


def test_update_of_deleted_record(client):
    record = client.create_record({})
    client.delete_record(record["id"])
    assert client.update_record(record["id"], 0, {}) == WriteNotFound(record["id"])
