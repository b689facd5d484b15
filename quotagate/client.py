"""HTTP client used by chat front-ends to gate chargeable work on quota."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import httpx

logger = logging.getLogger("quotagate.client")

_DEFAULT_TIMEOUT = 10.0


class QuotaClientError(RuntimeError):
    """Raised when the service rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExhaustedError(QuotaClientError):
    """Raised when no quota is left for a chargeable call."""


class QuotaClient:
    """Thin wrapper around the ``/api/auth`` endpoints.

    ``http`` may be any :class:`httpx.Client`, including FastAPI's
    ``TestClient``; when omitted a client is created for ``base_url``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3016",
        *,
        token: Optional[str] = None,
        http: Optional[httpx.Client] = None,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=base_url.rstrip("/"), timeout=_DEFAULT_TIMEOUT)
        self.token = token

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "QuotaClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Account endpoints
    # ------------------------------------------------------------------
    def register(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        payload = self._request("POST", "/api/auth/register", json={"email": email, "password": password, "name": name})
        self.token = payload["token"]
        return payload["user"]

    def login(self, email: str, password: str) -> Dict[str, Any]:
        payload = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = payload["token"]
        return payload["user"]

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/api/auth/me", authenticated=True)["user"]

    # ------------------------------------------------------------------
    # Quota endpoints
    # ------------------------------------------------------------------
    def get_quota(self) -> int:
        return int(self._request("GET", "/api/auth/quota", authenticated=True)["quota"])

    def pre_consume(self, call_type: Optional[str] = None) -> int:
        """Reserve one unit before chargeable work and return the remaining quota."""

        headers = {"X-Call-Type": call_type} if call_type else None
        payload = self._request("POST", "/api/auth/pre-consume", authenticated=True, headers=headers)
        return int(payload["quota"])

    def refund(self) -> int:
        return int(self._request("POST", "/api/auth/refund-quota", authenticated=True)["quota"])

    @contextmanager
    def charge(self, call_type: Optional[str] = None) -> Iterator[int]:
        """Reserve quota for the enclosed block and give it back if the block fails.

        Raises :class:`QuotaExhaustedError` before the block runs when nothing
        is left. If the process dies inside the block the unit is lost; the
        service keeps no record that would allow reconciling it.
        """

        remaining = self.pre_consume(call_type)
        try:
            yield remaining
        except BaseException:
            if call_type != "summary":
                try:
                    self.refund()
                except QuotaClientError as exc:
                    logger.warning("Failed to refund quota after failed call: %s", exc)
            raise

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        authenticated: bool = False,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers: Dict[str, str] = dict(headers or {})
        if authenticated:
            if not self.token:
                raise QuotaClientError("Not logged in", status_code=401)
            request_headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self._http.request(method, path, json=json, headers=request_headers)
        except httpx.HTTPError as exc:
            raise QuotaClientError(f"Failed to contact quota service: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code == 403 and "quota" in payload:
            raise QuotaExhaustedError(str(payload.get("message", "Message quota exhausted")), status_code=403)
        if response.status_code >= 400 or not payload.get("success", False):
            message = str(payload.get("message") or f"Service responded with {response.status_code}")
            raise QuotaClientError(message, status_code=response.status_code)
        return payload


__all__ = ["QuotaClient", "QuotaClientError", "QuotaExhaustedError"]
