from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from labrecords.client.session_monitor import ClientSessionMonitor


class ApiError(Exception):
    """Non-success envelope returned by the server."""

    def __init__(
        self,
        status_code: int,
        code: Optional[str],
        message: str,
        details: Any = None,
    ) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            return cls(response.status_code, None, response.text or "http error")
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return cls(response.status_code, None, "http error", body)
        return cls(
            response.status_code,
            error.get("code"),
            error.get("message", "http error"),
            error.get("details"),
        )


@dataclass(frozen=True)
class WriteAccepted:
    record: Dict[str, Any]


@dataclass(frozen=True)
class WriteConflict:
    """The server refused a stale write; ``latest`` is its current record."""

    latest: Dict[str, Any]
    message: str = "record was modified by another session"


@dataclass(frozen=True)
class WriteNotFound:
    record_id: str


WriteResult = Union[WriteAccepted, WriteConflict, WriteNotFound]


@dataclass
class LoginResult:
    token: str
    expires_at: str
    identity: Dict[str, Any] = field(default_factory=dict)


def _data(response: httpx.Response) -> Any:
    if response.is_success:
        return response.json().get("data")
    raise ApiError.from_response(response)


class LabRecordsClient:
    """Typed access to the records API over an ``httpx.Client``.

    Authenticated calls go through the session monitor so that every 401/403
    can move the session state machine.
    """

    def __init__(
        self,
        http: httpx.Client,
        *,
        monitor: Optional[ClientSessionMonitor] = None,
    ) -> None:
        self.http = http
        self.monitor = monitor or ClientSessionMonitor(http)

    def login(self, username: str, password: str) -> LoginResult:
        response = self.http.post(
            "/v1/auth/login", json={"username": username, "password": password}
        )
        data = _data(response)
        result = LoginResult(
            token=data["token"],
            expires_at=str(data["expires_at"]),
            identity=data.get("identity") or {},
        )
        self.monitor.establish(result.token, result.identity)
        return result

    def logout_all(self, *, reissue: bool = False) -> Dict[str, Any]:
        response = self.monitor.send(
            "POST", "/v1/auth/logout-all", params={"reissue": str(reissue).lower()}
        )
        data = _data(response)
        if data.get("token"):
            self.monitor.replace_token(data["token"])
        else:
            self.monitor.sign_out("logout_all")
        return data

    def change_password(self, current_password: str, new_password: str) -> Dict[str, Any]:
        response = self.monitor.send(
            "POST",
            "/v1/auth/password",
            json={"current_password": current_password, "new_password": new_password},
        )
        data = _data(response)
        self.monitor.replace_token(data["token"])
        return data

    def me(self) -> Dict[str, Any]:
        return _data(self.monitor.send("GET", "/v1/me"))

    def list_records(self) -> List[Dict[str, Any]]:
        return _data(self.monitor.send("GET", "/v1/records"))["items"]

    def get_record(self, record_id: str) -> Dict[str, Any]:
        return _data(self.monitor.send("GET", f"/v1/records/{record_id}"))

    def create_record(
        self, payload: Dict[str, Any], *, period: Optional[str] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"payload": payload}
        if period:
            body["period"] = period
        return _data(self.monitor.send("POST", "/v1/records", json=body))

    def update_record(
        self, record_id: str, version: int, payload: Dict[str, Any]
    ) -> WriteResult:
        response = self.monitor.send(
            "PUT",
            f"/v1/records/{record_id}",
            json={"version": version, "payload": payload},
        )
        if response.is_success:
            return WriteAccepted(response.json()["data"])
        error = ApiError.from_response(response)
        if response.status_code == 409 and isinstance(error.details, dict):
            latest = error.details.get("latestData")
            if isinstance(latest, dict):
                return WriteConflict(latest, error.message)
        if response.status_code == 404:
            return WriteNotFound(record_id)
        raise error

    def delete_record(self, record_id: str) -> None:
        _data(self.monitor.send("DELETE", f"/v1/records/{record_id}"))
