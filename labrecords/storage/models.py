from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class Identity:
    id: str
    username: str
    role: str = "standard"
    session_version: int = 0
    is_active: bool = True
    company_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class VersionedRecord:
    """A concrete test record guarded by an optimistic version stamp."""

    id: str
    owner_id: str
    reference: str
    sequence_number: int
    period: str
    version: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    updated_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        owner_id: str,
        *,
        reference: str,
        sequence_number: int,
        period: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "VersionedRecord":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            reference=reference,
            sequence_number=sequence_number,
            period=period,
            version=0,
            payload=dict(payload or {}),
            created_at=now,
            updated_at=now,
            updated_by=owner_id,
        )


@dataclass
class SequenceCounter:
    scope_key: str
    last_value: int = 0
    updated_at: datetime = field(default_factory=datetime.utcnow)
