from __future__ import annotations

from typing import Optional, Protocol

from labrecords.logging import get_logger
from labrecords.service.errors import IdentityNotFound

logger = get_logger(__name__)


class SessionVersionBackend(Protocol):
    def bump_session_version(self, identity_id: str) -> Optional[int]: ...

    def get_session_version(self, identity_id: str) -> Optional[int]: ...


class SessionVersionStore:
    """Per-identity monotonic counter deciding which token generation is valid.

    The backing store performs increment-and-fetch as one primitive, so
    concurrent bumps never lose an update.
    """

    def __init__(self, backend: SessionVersionBackend) -> None:
        self.backend = backend

    def bump(self, identity_id: str, *, reason: str = "unspecified") -> int:
        version = self.backend.bump_session_version(identity_id)
        if version is None:
            raise IdentityNotFound("identity not found", detail={"identity_id": identity_id})
        logger.info(
            "session_version_bumped",
            identity_id=identity_id,
            session_version=version,
            reason=reason,
        )
        return version

    def current(self, identity_id: str) -> int:
        version = self.backend.get_session_version(identity_id)
        if version is None:
            raise IdentityNotFound("identity not found", detail={"identity_id": identity_id})
        return version
