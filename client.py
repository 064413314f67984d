from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class ClientError(RuntimeError):
    def __init__(
        self, message: str, status: Optional[int] = None, error: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error = error


class AuthStore:
    """Client-side session state persisted as a small JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.user: Optional[dict[str, Any]] = None
        self.token: Optional[str] = None
        self.refresh_token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def load(self) -> "AuthStore":
        self.user = self.token = self.refresh_token = None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return self
        except (OSError, json.JSONDecodeError):
            logger.warning(f"auth_store_unreadable: path={self.path}")
            return self
        if not isinstance(payload, dict) or payload.get("version") != STORE_VERSION:
            return self
        self.user = payload.get("user")
        self.token = payload.get("token")
        self.refresh_token = payload.get("refreshToken")
        return self

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "user": self.user,
            "token": self.token,
            "refreshToken": self.refresh_token,
            "version": STORE_VERSION,
        }
        self.path.write_text(json.dumps(payload), encoding="utf-8")

    def set_session(
        self, user: dict[str, Any], token: str, refresh_token: str
    ) -> None:
        self.user = user
        self.token = token
        self.refresh_token = refresh_token
        self.save()

    def update_tokens(self, token: str, refresh_token: str) -> None:
        self.token = token
        self.refresh_token = refresh_token
        self.save()

    def clear(self) -> None:
        self.user = self.token = self.refresh_token = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class FinanceClient:
    def __init__(self, base_url: str, store: AuthStore, *, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.timeout = timeout

    def _send(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> tuple[int, dict[str, Any]]:
        url = f"{self.base_url}{path}"
        if params:
            query = {k: v for k, v in params.items() if v is not None}
            if query:
                url = f"{url}?{urlencode(query)}"
        headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if token:
            headers["Authorization"] = f"Bearer {token}"

        req = Request(url, data=data, method=method.upper(), headers=headers)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status, raw = resp.status, resp.read()
        except HTTPError as exc:
            status, raw = exc.code, exc.read()
        except (URLError, TimeoutError) as exc:
            raise ClientError(f"Failed to reach {url}") from exc

        if not raw:
            return status, {}
        try:
            return status, json.loads(raw.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise ClientError(
                f"Unexpected response from {url}", status=status
            ) from exc

    @staticmethod
    def _unwrap(status: int, payload: dict[str, Any]) -> Any:
        if status >= 400 or not payload.get("success"):
            raise ClientError(
                payload.get("message") or f"Request failed with status {status}",
                status=status,
                error=payload.get("error"),
            )
        return payload.get("data")

    def _refresh(self) -> None:
        status, payload = self._send(
            "POST", "/auth/refresh", {"refreshToken": self.store.refresh_token}
        )
        if status != 200 or not payload.get("success"):
            logger.info("client_refresh_failed: clearing stored session")
            self.store.clear()
            raise ClientError(
                "Session expired, please log in again",
                status=401,
                error="unauthorized",
            )
        data = payload["data"]
        self.store.update_tokens(data["token"], data["refreshToken"])

    def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        status, payload = self._send(method, path, json, params, self.store.token)
        if status == 401 and self.store.refresh_token:
            self._refresh()
            status, payload = self._send(method, path, json, params, self.store.token)
        return self._unwrap(status, payload)

    def login(self, username: str, password: str) -> dict[str, Any]:
        status, payload = self._send(
            "POST", "/auth/login", {"username": username, "password": password}
        )
        data = self._unwrap(status, payload)
        self.store.set_session(data["user"], data["token"], data["refreshToken"])
        return data["user"]

    def register(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> dict[str, Any]:
        status, payload = self._send(
            "POST",
            "/auth/register",
            {
                "username": username,
                "email": email,
                "password": password,
                "firstName": first_name,
                "lastName": last_name,
            },
        )
        data = self._unwrap(status, payload)
        self.store.set_session(data["user"], data["token"], data["refreshToken"])
        return data["user"]

    def logout(self) -> None:
        self.store.clear()

    def accounts(self) -> dict[str, Any]:
        return self.request("GET", "/accounts")

    def create_account(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/accounts", json=payload)

    def transactions(self, **params: Any) -> dict[str, Any]:
        return self.request("GET", "/transactions", params=params)

    def create_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/transactions", json=payload)

    def analytics(
        self,
        period: str = "current",
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict[str, Any]:
        return self.request(
            "GET",
            "/analytics",
            params={"period": period, "startDate": start_date, "endDate": end_date},
        )
