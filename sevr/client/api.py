from __future__ import annotations

from typing import Any, Optional

import httpx

from sevr.logging import get_logger

logger = get_logger(__name__)

API_PREFIX = "/api"


class ApiError(Exception):
    """Non-2xx response from the Sevr API."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error") or response.reason_phrase or "request failed"
        return cls(response.status_code, str(message), body.get("code"))


class SevrClient:
    """Thin HTTP client holding the access/refresh token pair.

    Authenticated calls that come back 401 trigger one refresh and one retry,
    mirroring how the browser client keeps sessions alive.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        if http is None:
            if not base_url:
                raise ValueError("base_url or http client is required")
            http = httpx.Client(base_url=base_url, timeout=timeout)
        self.http = http
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.user: Optional[dict[str, Any]] = None

    def __enter__(self) -> "SevrClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self.http.close()

    def _url(self, path: str) -> str:
        return f"{API_PREFIX}{path}"

    def _checked(self, response: httpx.Response) -> dict[str, Any]:
        if response.is_error:
            raise ApiError.from_response(response)
        return response.json()

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._checked(self.http.post(self._url(path), json=body))

    # -- auth ------------------------------------------------------------

    def request_code(self, email: str) -> None:
        self._post("/auth/request-otp", {"email": email})

    def verify_code(self, email: str, code: str) -> dict[str, Any]:
        data = self._post("/auth/verify-otp", {"email": email, "code": code})
        self.access_token = data["accessToken"]
        self.refresh_token = data["refreshToken"]
        self.user = data["user"]
        return data

    def refresh(self) -> str:
        if not self.refresh_token:
            raise ApiError(401, "No refresh token")
        data = self._post("/auth/refresh", {"refreshToken": self.refresh_token})
        self.access_token = data["accessToken"]
        self.user = data.get("user", self.user)
        return self.access_token

    def logout(self) -> None:
        if self.refresh_token:
            self._post("/auth/logout", {"refreshToken": self.refresh_token})
        self.access_token = None
        self.refresh_token = None
        self.user = None

    # -- authenticated calls ---------------------------------------------

    def _send(self, method: str, path: str, json: Optional[dict[str, Any]]) -> httpx.Response:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return self.http.request(method, self._url(path), json=json, headers=headers)

    def request(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        response = self._send(method, path, json)
        if response.status_code == 401 and self.access_token and self.refresh_token:
            try:
                self.refresh()
            except ApiError as exc:
                logger.info("client_refresh_failed", status_code=exc.status_code)
                self.access_token = None
                self.refresh_token = None
                raise
            response = self._send(method, path, json)
        return self._checked(response)

    def me(self) -> dict[str, Any]:
        return self.request("GET", "/user/me")

    def delete_account(self) -> None:
        self.request("DELETE", "/user/me")
        self.access_token = None
        self.refresh_token = None
        self.user = None
