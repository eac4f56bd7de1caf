from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Optional

from labrecords.client.api import LabRecordsClient, WriteAccepted, WriteConflict, WriteResult
from labrecords.logging import get_logger
from labrecords.service.specimens import specimen_count

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConflictSummary:
    modified_by: Optional[str]
    modified_by_self: bool
    server_version: int
    server_updated_at: Optional[str]
    server_specimen_count: int
    local_specimen_count: int

    @property
    def modifier_label(self) -> str:
        if self.modified_by_self:
            return "you, on another device"
        return "another user"


class ConflictResolutionFlow:
    """User-driven resolution of a rejected save: reload or overwrite.

    There is no automatic merge; the user picks which side wins.
    """

    def __init__(
        self,
        client: LabRecordsClient,
        conflict: WriteConflict,
        local_payload: Dict[str, Any],
        *,
        identity_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.conflict = conflict
        self.local_payload = copy.deepcopy(local_payload)
        self.identity_id = identity_id or client.monitor.identity_id

    @property
    def latest(self) -> Dict[str, Any]:
        return self.conflict.latest

    @property
    def record_id(self) -> str:
        return str(self.latest["id"])

    def summary(self) -> ConflictSummary:
        latest = self.latest
        modified_by = latest.get("updated_by")
        updated_at = latest.get("updated_at")
        return ConflictSummary(
            modified_by=modified_by,
            modified_by_self=bool(modified_by) and modified_by == self.identity_id,
            server_version=int(latest["version"]),
            server_updated_at=str(updated_at) if updated_at else None,
            server_specimen_count=specimen_count(latest.get("payload") or {}),
            local_specimen_count=specimen_count(self.local_payload),
        )

    def reload(self) -> Dict[str, Any]:
        """Drop local edits and adopt the server's record."""
        self.local_payload = copy.deepcopy(self.latest.get("payload") or {})
        logger.info("conflict_resolved_reload", record_id=self.record_id)
        return copy.deepcopy(self.latest)

    def force_overwrite(self) -> WriteResult:
        """Resubmit local edits on top of the server's version.

        A third writer can still move the record in between; the result is
        then another ``WriteConflict`` carrying the newer record.
        """
        result = self.client.update_record(
            self.record_id, int(self.latest["version"]), self.local_payload
        )
        if isinstance(result, WriteConflict):
            self.conflict = result
        elif isinstance(result, WriteAccepted):
            logger.info(
                "conflict_resolved_overwrite",
                record_id=self.record_id,
                version=result.record.get("version"),
            )
        return result
