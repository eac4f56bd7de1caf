"""Client-side session state driven by server error codes.

Every authenticated call goes through :meth:`ClientSessionMonitor.send`.
Responses are classified by the envelope's ``error.code``:

* ``SESSION_REPLACED`` means another login superseded this one. The
  session locks: drafts are kept read-only and nothing is sent until the
  user acknowledges.
* ``account_deactivated`` or any other 401 logs the session out and clears
  credentials and drafts.
* A 403 with another code (role check) leaves the session untouched.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import httpx

from labrecords.logging import get_logger

logger = get_logger(__name__)

SESSION_REPLACED_CODE = "SESSION_REPLACED"
ACCOUNT_DEACTIVATED_CODE = "account_deactivated"


class SessionState(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    LOGGED_OUT = "logged_out"


class ClientStateError(Exception):
    """A call was attempted in a state that does not allow it."""


class SessionLockedError(ClientStateError):
    pass


class NotAuthenticatedError(ClientStateError):
    pass


@dataclass(frozen=True)
class SessionReplaced:
    identity_id: Optional[str]
    message: str


@dataclass(frozen=True)
class LoggedOut:
    identity_id: Optional[str]
    reason: str


@dataclass(frozen=True)
class StateChange:
    previous: SessionState
    current: SessionState


E = TypeVar("E")


class _Observers(Generic[E]):
    def __init__(self) -> None:
        self._callbacks: List[Callable[[E], None]] = []
        self._lock = threading.Lock()

    def add(self, callback: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, event: E) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:
                logger.error(
                    "session_observer_failed",
                    event_type=type(event).__name__,
                    error=str(exc),
                )


def error_code_of(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        return str(code) if code else None
    return None


class ClientSessionMonitor:
    def __init__(self, http: httpx.Client) -> None:
        self.http = http
        self._lock = threading.RLock()
        self._state = SessionState.LOGGED_OUT
        self._token: Optional[str] = None
        self._identity: Optional[Dict[str, Any]] = None
        self._drafts: Dict[str, Dict[str, Any]] = {}
        self._replaced = _Observers[SessionReplaced]()
        self._logged_out = _Observers[LoggedOut]()
        self._state_changes = _Observers[StateChange]()

    # observers
    def on_session_replaced(
        self, callback: Callable[[SessionReplaced], None]
    ) -> Callable[[], None]:
        return self._replaced.add(callback)

    def on_logged_out(self, callback: Callable[[LoggedOut], None]) -> Callable[[], None]:
        return self._logged_out.add(callback)

    def on_state_change(self, callback: Callable[[StateChange], None]) -> Callable[[], None]:
        return self._state_changes.add(callback)

    # state
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def identity(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._identity)

    @property
    def identity_id(self) -> Optional[str]:
        identity = self._identity or {}
        return identity.get("id")

    @property
    def read_only(self) -> bool:
        return self._state == SessionState.LOCKED

    @property
    def drafts(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._drafts)

    def save_draft(self, key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if self._state == SessionState.LOCKED:
                raise SessionLockedError("session replaced; drafts are read-only")
            if self._state == SessionState.LOGGED_OUT:
                raise NotAuthenticatedError("not logged in")
            self._drafts[key] = copy.deepcopy(payload)

    def discard_draft(self, key: str) -> None:
        with self._lock:
            if self._state == SessionState.ACTIVE:
                self._drafts.pop(key, None)

    def establish(self, token: str, identity: Dict[str, Any]) -> None:
        with self._lock:
            if self._state != SessionState.LOGGED_OUT:
                raise ClientStateError(f"cannot start a session while {self._state.value}")
            self._token = token
            self._identity = dict(identity)
            self._drafts = {}
            previous = self._set_state(SessionState.ACTIVE)
        self._state_changes.notify(StateChange(previous, SessionState.ACTIVE))

    def replace_token(self, token: str) -> None:
        """Swap in a token issued to this session, e.g. after a password change."""
        with self._lock:
            if self._state != SessionState.ACTIVE:
                raise ClientStateError(f"cannot refresh a {self._state.value} session")
            self._token = token

    def acknowledge(self) -> bool:
        """Leave the locked state after the user saw the replacement notice."""
        with self._lock:
            if self._state != SessionState.LOCKED:
                return False
            identity_id = self.identity_id
            self._clear()
            previous = self._set_state(SessionState.LOGGED_OUT)
        self._state_changes.notify(StateChange(previous, SessionState.LOGGED_OUT))
        self._logged_out.notify(LoggedOut(identity_id, "acknowledged"))
        return True

    def sign_out(self, reason: str = "logout") -> None:
        """End the session locally, e.g. after this client revoked every token."""
        self._log_out(None, reason=reason)

    # transport
    def send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        with self._lock:
            if self._state == SessionState.LOCKED:
                raise SessionLockedError("session replaced by a newer login")
            if self._state == SessionState.LOGGED_OUT or not self._token:
                raise NotAuthenticatedError("not logged in")
            token = self._token
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        self.observe(response, token=token)
        return response

    def observe(self, response: httpx.Response, *, token: Optional[str] = None) -> None:
        """Apply the state transition a response implies, if any."""
        if response.status_code not in (401, 403):
            return
        code = error_code_of(response)
        if code == SESSION_REPLACED_CODE:
            self._lock_session(token)
        elif response.status_code == 401 or code == ACCOUNT_DEACTIVATED_CODE:
            self._log_out(token, reason=code or "unauthorized")

    def _lock_session(self, token: Optional[str]) -> None:
        with self._lock:
            if self._state != SessionState.ACTIVE or (token and token != self._token):
                return
            identity_id = self.identity_id
            previous = self._set_state(SessionState.LOCKED)
        logger.info("client_session_replaced", identity_id=identity_id)
        self._state_changes.notify(StateChange(previous, SessionState.LOCKED))
        self._replaced.notify(
            SessionReplaced(identity_id, "You were signed in on another device.")
        )

    def _log_out(self, token: Optional[str], *, reason: str) -> None:
        with self._lock:
            if self._state != SessionState.ACTIVE or (token and token != self._token):
                return
            identity_id = self.identity_id
            self._clear()
            previous = self._set_state(SessionState.LOGGED_OUT)
        logger.info("client_session_logged_out", identity_id=identity_id, reason=reason)
        self._state_changes.notify(StateChange(previous, SessionState.LOGGED_OUT))
        self._logged_out.notify(LoggedOut(identity_id, reason))

    def _clear(self) -> None:
        self._token = None
        self._identity = None
        self._drafts = {}

    def _set_state(self, state: SessionState) -> SessionState:
        previous = self._state
        self._state = state
        return previous
