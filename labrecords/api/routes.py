from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response

from labrecords.api.schemas import (
    AdminCreateIdentityRequest,
    Envelope,
    IdentityListResponse,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    PasswordChangeRequest,
    RecordCreateRequest,
    RecordListResponse,
    RecordResponse,
    RecordUpdateRequest,
    SetActiveRequest,
)
from labrecords.logging import get_logger
from labrecords.service.auth import Claims
from labrecords.service.concurrency import WriteAccepted, WriteConflict
from labrecords.service.errors import RateLimitedError, RecordNotFound, VersionConflict
from labrecords.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        RateLimitedError (429) if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": info.reset_seconds}
        )

    return info


async def get_user(authorization: Optional[str] = Header(None)) -> Claims:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> Claims:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, required_role="admin")


def _record_payload(record) -> dict:
    return RecordResponse.from_record(record).model_dump(mode="json")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username and password.

    A successful login invalidates every token previously issued to the
    identity, on any device.

    Raises:
        401: If credentials are invalid
        403: If the account is deactivated
        429: If rate limit exceeded for this username
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    identity, issued = await runtime.auth.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=issued.token,
            token_type=issued.token_type,
            expires_at=issued.expires_at,
            identity=IdentityResponse.from_identity(identity),
        ),
    )


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    reissue: bool = Query(False, description="Return a fresh token for this client"),
    principal: Claims = Depends(get_user),
):
    """Invalidate every token of the caller, including the one used here."""
    runtime = get_runtime()
    version, issued = await runtime.auth.logout_all(principal.identity_id, reissue=reissue)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(
            message="all sessions revoked",
            session_version=version,
            token=issued.token if issued else None,
            expires_at=issued.expires_at if issued else None,
        ),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Claims = Depends(get_user),
):
    """Change the caller's password; other sessions are logged out."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.identity_id}",
        limit=5,
        window_seconds=300,
    )
    issued = await runtime.auth.change_password(
        principal.identity_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data={
            "status": "changed",
            "token": issued.token,
            "token_type": issued.token_type,
            "expires_at": issued.expires_at,
        },
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_identity(principal: Claims = Depends(get_user)):
    runtime = get_runtime()
    identity = runtime.auth.get_identity(principal.identity_id)
    return Envelope(status="ok", data=IdentityResponse.from_identity(identity))


@router.get("/admin/identities", response_model=Envelope, tags=["admin"])
async def admin_list_identities(
    limit: int = Query(100, ge=1, le=1000),
    principal: Claims = Depends(get_admin_user),
):
    runtime = get_runtime()
    identities = runtime.auth.list_identities(limit=limit)
    return Envelope(
        status="ok",
        data=IdentityListResponse(
            items=[IdentityResponse.from_identity(i) for i in identities]
        ),
    )


@router.post("/admin/identities", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_identity(
    body: AdminCreateIdentityRequest, principal: Claims = Depends(get_admin_user)
):
    runtime = get_runtime()
    identity = runtime.auth.provision(
        body.username,
        body.password,
        role=body.role,
        company_name=body.company_name,
    )
    logger.info(
        "admin_identity_created",
        identity_id=identity.id,
        acting_identity_id=principal.identity_id,
    )
    return Envelope(status="ok", data=IdentityResponse.from_identity(identity))


@router.post("/admin/identities/{identity_id}/active", response_model=Envelope, tags=["admin"])
async def admin_set_active(
    identity_id: str,
    body: SetActiveRequest,
    principal: Claims = Depends(get_admin_user),
):
    runtime = get_runtime()
    identity = runtime.auth.set_active(
        identity_id, body.active, acting_identity_id=principal.identity_id
    )
    return Envelope(status="ok", data=IdentityResponse.from_identity(identity))


@router.post("/records", response_model=Envelope, status_code=201, tags=["records"])
async def create_record(body: RecordCreateRequest, principal: Claims = Depends(get_user)):
    runtime = get_runtime()
    record = runtime.records.create(
        principal.identity_id, body.payload, period=body.period
    )
    return Envelope(status="ok", data=RecordResponse.from_record(record))


@router.get("/records", response_model=Envelope, tags=["records"])
async def list_records(
    limit: int = Query(100, ge=1, le=1000),
    principal: Claims = Depends(get_user),
):
    runtime = get_runtime()
    records = runtime.records.list(principal.identity_id, limit=limit)
    return Envelope(
        status="ok",
        data=RecordListResponse(items=[RecordResponse.from_record(r) for r in records]),
    )


@router.get("/records/{record_id}", response_model=Envelope, tags=["records"])
async def get_record(record_id: str, principal: Claims = Depends(get_user)):
    runtime = get_runtime()
    record = runtime.records.get(principal.identity_id, record_id)
    return Envelope(status="ok", data=RecordResponse.from_record(record))


@router.put("/records/{record_id}", response_model=Envelope, tags=["records"])
async def update_record(
    record_id: str,
    body: RecordUpdateRequest,
    principal: Claims = Depends(get_user),
):
    """Save a record edited from ``body.version``.

    Raises:
        404: If the record does not exist for this identity
        409: If the record moved past ``body.version``; ``details.latestData``
            holds the current record
    """
    runtime = get_runtime()
    result = runtime.records.update(
        principal.identity_id,
        record_id,
        body.version,
        body.payload,
        actor_id=principal.identity_id,
    )
    if isinstance(result, WriteAccepted):
        return Envelope(status="ok", data=RecordResponse.from_record(result.record))
    if isinstance(result, WriteConflict):
        raise VersionConflict(
            "record was modified by another session",
            latest=_record_payload(result.latest),
        )
    raise RecordNotFound("record not found", detail={"record_id": record_id})


@router.delete("/records/{record_id}", response_model=Envelope, tags=["records"])
async def delete_record(record_id: str, principal: Claims = Depends(get_user)):
    runtime = get_runtime()
    runtime.records.delete(principal.identity_id, record_id)
    return Envelope(status="ok", data={"deleted": True, "record_id": record_id})
