from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional, Protocol, Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from labrecords.config import Settings
from labrecords.logging import get_logger
from labrecords.service.errors import (
    AccountDeactivated,
    AuthenticationError,
    BadRequestError,
    CredentialInvalid,
    ForbiddenError,
    IdentityDeactivated,
    IdentityNotFound,
    NotFoundError,
    ServiceError,
    SessionSuperseded,
    TokenExpired,
    TokenMalformed,
    TokenMissing,
)
from labrecords.service.session_versions import SessionVersionStore
from labrecords.storage.models import Identity

logger = get_logger(__name__)

ROLES = frozenset({"admin", "standard"})


class AuthStore(Protocol):
    def create_identity(
        self,
        username: str,
        *,
        role: str = "standard",
        is_active: bool = True,
        company_name: Optional[str] = None,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_username(self, username: str) -> Optional[Identity]: ...

    def list_identities(self, limit: int = 100) -> List[Identity]: ...

    def set_identity_active(self, identity_id: str, active: bool) -> Optional[Identity]: ...

    def touch_last_login(self, identity_id: str) -> None: ...

    def bump_session_version(self, identity_id: str) -> Optional[int]: ...

    def get_session_version(self, identity_id: str) -> Optional[int]: ...

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]: ...


class AuthFailureReason(str, Enum):
    TOKEN_MISSING = "token_missing"
    TOKEN_MALFORMED = "token_malformed"
    TOKEN_EXPIRED = "token_expired"
    IDENTITY_NOT_FOUND = "identity_not_found"
    IDENTITY_DEACTIVATED = "identity_deactivated"
    SESSION_SUPERSEDED = "session_superseded"


_FAILURE_ERRORS: dict[AuthFailureReason, tuple[type[ServiceError], str]] = {
    AuthFailureReason.TOKEN_MISSING: (TokenMissing, "token missing"),
    AuthFailureReason.TOKEN_MALFORMED: (TokenMalformed, "invalid or expired token"),
    AuthFailureReason.TOKEN_EXPIRED: (TokenExpired, "invalid or expired token"),
    AuthFailureReason.IDENTITY_NOT_FOUND: (IdentityNotFound, "identity not found"),
    AuthFailureReason.IDENTITY_DEACTIVATED: (IdentityDeactivated, "account deactivated"),
    AuthFailureReason.SESSION_SUPERSEDED: (
        SessionSuperseded,
        "session replaced by a newer login",
    ),
}


@dataclass(frozen=True)
class Claims:
    """Verified token claims checked against the live identity."""

    identity_id: str
    username: str
    role: str
    session_version: int
    issued_at: datetime
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class AuthFailure:
    reason: AuthFailureReason
    identity_id: Optional[str] = None

    def to_error(self) -> ServiceError:
        error_cls, message = _FAILURE_ERRORS[self.reason]
        detail = {"reason": self.reason.value}
        return error_cls(message, detail=detail)


VerifyResult = Union[Claims, AuthFailure]


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    session_version: int
    token_type: str = "bearer"


class AuthService:
    """Credential checks, token issuance and verification against session versions."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        session_versions: Optional[SessionVersionStore] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.session_versions = session_versions or SessionVersionStore(store)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # provisioning
    def provision(
        self,
        username: str,
        password: str,
        *,
        role: str = "standard",
        company_name: Optional[str] = None,
    ) -> Identity:
        if role not in ROLES:
            raise BadRequestError("invalid role", detail={"role": role})
        self._check_password_policy(password)
        identity = self.store.create_identity(
            username, role=role, company_name=company_name
        )
        self.save_password(identity.id, password)
        self.logger.info("identity_provisioned", identity_id=identity.id, role=role)
        return identity

    def list_identities(self, limit: int = 100) -> List[Identity]:
        return self.store.list_identities(limit=limit)

    def get_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        return identity

    def set_active(
        self, identity_id: str, active: bool, *, acting_identity_id: str
    ) -> Identity:
        """Enable or disable an account; disabling invalidates its tokens."""
        if identity_id == acting_identity_id:
            raise BadRequestError("cannot change your own access")
        identity = self.store.set_identity_active(identity_id, active)
        if not identity:
            raise NotFoundError("identity not found", detail={"identity_id": identity_id})
        if not active:
            identity.session_version = self.session_versions.bump(
                identity_id, reason="deactivated"
            )
        self.logger.info(
            "identity_access_changed",
            identity_id=identity_id,
            active=active,
            acting_identity_id=acting_identity_id,
        )
        return identity

    # login / logout
    async def login(self, username: str, password: str) -> tuple[Identity, IssuedToken]:
        """Verify credentials, supersede every earlier token, and issue a new one."""
        identity = self.store.get_identity_by_username(username)
        if not identity:
            await self._failure_delay()
            self.logger.warning("login_failed", reason="unknown_identity")
            raise CredentialInvalid("invalid credentials")
        if not identity.is_active:
            self.logger.warning("login_rejected_deactivated", identity_id=identity.id)
            raise AccountDeactivated("account deactivated")
        if not self.verify_password(identity.id, password):
            await self._failure_delay()
            self.logger.warning("login_failed", reason="bad_password", identity_id=identity.id)
            raise CredentialInvalid("invalid credentials")

        identity.session_version = self.session_versions.bump(identity.id, reason="login")
        self.store.touch_last_login(identity.id)
        token = self.issue(identity)
        self.logger.info(
            "login_succeeded",
            identity_id=identity.id,
            session_version=identity.session_version,
        )
        return identity, token

    async def logout_all(
        self, identity_id: str, *, reissue: bool = False
    ) -> tuple[int, Optional[IssuedToken]]:
        """Invalidate every token of the identity, including the caller's.

        With ``reissue`` the caller receives a token stamped with the new version.
        """
        version = self.session_versions.bump(identity_id, reason="logout_all")
        token = None
        if reissue:
            identity = self.get_identity(identity_id)
            identity.session_version = version
            token = self.issue(identity)
        return version, token

    async def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> IssuedToken:
        identity = self.get_identity(identity_id)
        if not self.verify_password(identity_id, current_password):
            raise CredentialInvalid("current password is incorrect")
        self._check_password_policy(new_password)
        self.save_password(identity_id, new_password)
        identity.session_version = self.session_versions.bump(
            identity_id, reason="password_change"
        )
        return self.issue(identity)

    async def _failure_delay(self) -> None:
        low = max(0, self.settings.login_failure_delay_ms_min)
        high = max(low, self.settings.login_failure_delay_ms_max)
        if high <= 0 or self.settings.test_mode:
            return
        await asyncio.sleep(random.uniform(low, high) / 1000.0)

    # tokens
    def issue(self, identity: Identity) -> IssuedToken:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity.id,
            "sv": identity.session_version,
            "role": identity.role,
            "username": identity.username,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            expires_at=expires_at,
            session_version=identity.session_version,
        )

    def verify(self, token: Optional[str]) -> VerifyResult:
        """Classify a presented token; never raises for token problems."""
        if not token:
            return AuthFailure(AuthFailureReason.TOKEN_MISSING)
        payload, failure = self._decode_jwt(token)
        if failure is not None:
            return AuthFailure(failure)
        identity_id = str(payload["sub"])
        identity = self.store.get_identity(identity_id)
        if not identity:
            return AuthFailure(AuthFailureReason.IDENTITY_NOT_FOUND, identity_id)
        if not identity.is_active:
            return AuthFailure(AuthFailureReason.IDENTITY_DEACTIVATED, identity_id)
        try:
            live_version = self.session_versions.current(identity_id)
        except IdentityNotFound:
            return AuthFailure(AuthFailureReason.IDENTITY_NOT_FOUND, identity_id)
        if payload["sv"] != live_version:
            return AuthFailure(AuthFailureReason.SESSION_SUPERSEDED, identity_id)
        return Claims(
            identity_id=identity.id,
            username=identity.username,
            role=identity.role,
            session_version=live_version,
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> Claims:
        """Resolve a bearer header to claims or raise the classified error."""
        result = self.verify(self._extract_bearer(authorization))
        if isinstance(result, AuthFailure):
            log_fn = (
                self.logger.info
                if result.reason == AuthFailureReason.TOKEN_MISSING
                else self.logger.warning
            )
            log_fn(
                "token_rejected",
                reason=result.reason.value,
                identity_id=result.identity_id,
            )
            raise result.to_error()
        if required_role and not self._role_allows(result, required_role):
            raise ForbiddenError("admin access required")
        return result

    def _role_allows(self, claims: Claims, required: str) -> bool:
        return claims.role == required or claims.is_admin

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    # passwords
    def _check_password_policy(self, password: str) -> None:
        if len(password or "") < self.settings.min_password_length:
            raise BadRequestError(
                f"password must be at least {self.settings.min_password_length} characters"
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, identity_id: str, password: str) -> bool:
        """Verify an identity's password against the stored hash."""
        record = self.store.get_password_record(identity_id)
        if not record:
            self.logger.warning("password_record_missing", identity_id=identity_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", identity_id=identity_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, identity_id: str, password: str) -> None:
        """Hash and save a new password for an identity."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(identity_id, pwd_hash, algo)

    # JWT
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(
        self, token: str
    ) -> tuple[Optional[dict[str, Any]], Optional[AuthFailureReason]]:
        malformed = AuthFailureReason.TOKEN_MALFORMED
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None, malformed

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None, malformed
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None, malformed

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes: compare_digest rejects non-ASCII str
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            return None, malformed
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None, malformed
        if not isinstance(payload, dict):
            return None, malformed
        if payload.get("iss") != self.settings.jwt_issuer:
            return None, malformed
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("token_type") != "access":
            return None, malformed
        if not payload.get("sub") or not isinstance(payload.get("sv"), int):
            return None, malformed
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None, malformed
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None, AuthFailureReason.TOKEN_EXPIRED
        return payload, None


__all__ = [
    "AuthFailure",
    "AuthFailureReason",
    "AuthService",
    "AuthenticationError",
    "Claims",
    "IssuedToken",
    "VerifyResult",
]
