from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

import psycopg

from labrecords.config import Settings
from labrecords.logging import get_logger
from labrecords.service.errors import ScopeAllocationFailure
from labrecords.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class CounterBackend(Protocol):
    def increment_counter(self, scope_key: str) -> int: ...


def scope_key(owner_id: str, period: str) -> str:
    return f"{owner_id}:{period}"


def format_reference(period: str, prefix: str, value: int, width: int = 4) -> str:
    """Render ``2025-B-0001``; values wider than ``width`` are not truncated."""
    return f"{period}-{prefix}-{str(value).zfill(width)}"


def current_period() -> str:
    return str(datetime.now(timezone.utc).year)


class SequenceAllocator:
    """Hands out per-scope sequence numbers with a single atomic increment.

    Two callers on the same scope never receive the same value. A value
    consumed by a request that later fails is not returned, so gaps are
    possible.
    """

    def __init__(self, backend: CounterBackend, settings: Settings) -> None:
        self.backend = backend
        self.prefix = settings.reference_prefix
        self.width = settings.reference_width

    def next(self, key: str) -> int:
        try:
            value = self.backend.increment_counter(key)
        except (StoreUnavailable, psycopg.Error) as exc:
            logger.error("sequence_allocation_failed", scope_key=key, error=str(exc))
            raise ScopeAllocationFailure(
                "sequence counter unavailable", detail={"scope_key": key}
            ) from exc
        logger.debug("sequence_allocated", scope_key=key, value=value)
        return value

    def allocate_reference(
        self, owner_id: str, period: Optional[str] = None
    ) -> Tuple[int, str]:
        period = period or current_period()
        value = self.next(scope_key(owner_id, period))
        return value, format_reference(period, self.prefix, value, self.width)
