from __future__ import annotations

import math
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from labrecords.storage.models import Identity, VersionedRecord

# Maximum nested JSON depth accepted in record payloads
MAX_JSON_DEPTH = 20
# Maximum array items, e.g. specimens per record
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject payloads nested deeper than ``max_depth`` or with oversized arrays.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, float) and not math.isfinite(obj):
        raise ValueError("numbers must be finite")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_username(value: str) -> str:
    # Zero-width characters could make two usernames look identical
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "SESSION_REPLACED",
    "forbidden",
    "account_deactivated",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_login_username(cls, value: str) -> str:
        return _normalize_username(value)


class IdentityResponse(BaseModel):
    id: str
    username: str
    role: str
    is_active: bool = True
    company_name: Optional[str] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            username=identity.username,
            role=identity.role,
            is_active=identity.is_active,
            company_name=identity.company_name,
            created_at=identity.created_at,
            last_login_at=identity.last_login_at,
        )


class IdentityListResponse(BaseModel):
    items: List[IdentityResponse]


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    identity: IdentityResponse


class LogoutAllResponse(BaseModel):
    message: str
    session_version: int
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminCreateIdentityRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str
    role: Literal["admin", "standard"] = "standard"
    company_name: Optional[str] = Field(default=None, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_admin_username(cls, value: str) -> str:
        normalized = _normalize_username(value)
        if not normalized:
            raise ValueError("username must not be blank")
        return normalized

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SetActiveRequest(BaseModel):
    active: bool


class RecordCreateRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)
    period: Optional[str] = Field(default=None, pattern=r"^[0-9]{4}$")

    @field_validator("payload")
    @classmethod
    def _validate_payload_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class RecordUpdateRequest(BaseModel):
    version: int = Field(..., ge=0, description="Version the client last read")
    payload: Dict[str, Any]

    @field_validator("payload")
    @classmethod
    def _validate_payload_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class RecordResponse(BaseModel):
    id: str
    owner_id: str
    reference: str
    sequence_number: int
    period: str
    version: int
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    updated_by: Optional[str] = None

    @classmethod
    def from_record(cls, record: VersionedRecord) -> "RecordResponse":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            reference=record.reference,
            sequence_number=record.sequence_number,
            period=record.period,
            version=record.version,
            payload=record.payload,
            created_at=record.created_at,
            updated_at=record.updated_at,
            updated_by=record.updated_by,
        )


class RecordListResponse(BaseModel):
    items: List[RecordResponse]
