"""HTTP client for the todosync backend."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .errors import ApiError, AuthenticationError, TransientError
from .models import format_datetime

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
HEALTH_TIMEOUT = 5.0


class ApiClient:
    """Thin wrapper over ``httpx.Client`` that maps failures to client errors.

    Network failures raise TransientError; 401 raises AuthenticationError;
    other error statuses raise ApiError.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        # An injected client (e.g. an in-process app) is used as-is
        self._http = http_client
        if self._http is None:
            self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: Dict[str, Any] = {"headers": self._headers(), "json": json, "params": params}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.debug(f"{method} {path} failed: {e}")
            raise TransientError(f"Cannot reach backend: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(self._detail(response))
        if response.status_code >= 400:
            raise ApiError(response.status_code, self._detail(response))
        return response.json()

    @staticmethod
    def _detail(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            return response.text
        return body.get("detail", body) if isinstance(body, dict) else body

    # === Connectivity ===

    def is_online(self) -> bool:
        """True if ``GET /health`` answers 200."""
        try:
            self._request("GET", "/health", timeout=HEALTH_TIMEOUT)
        except (TransientError, ApiError) as e:
            logger.debug(f"Connectivity check failed: {e}")
            return False
        return True

    # === Auth ===

    def register(self, email: str, password: str, name: str) -> Dict[str, Any]:
        result = self._request(
            "POST", "/auth/register", json={"email": email, "password": password, "name": name}
        )
        self.token = result["token"]
        return result

    def login(self, email: str, password: str) -> Dict[str, Any]:
        result = self._request("POST", "/auth/login", json={"email": email, "password": password})
        self.token = result["token"]
        return result

    # === Sync ===

    def upload_sync(
        self, todos: List[Dict[str, Any]], last_sync: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/sync/upload",
            json={"todos": todos, "lastSync": format_datetime(last_sync)},
        )

    def download_sync(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        params = {"since": format_datetime(since)} if since else None
        return self._request("GET", "/sync/download", params=params)

    def resolve_conflict(
        self,
        client_id: str,
        resolution: str,
        todo_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"client_id": client_id, "resolution": resolution}
        if todo_data is not None:
            body["todo_data"] = todo_data
        return self._request("POST", "/sync/resolve-conflict", json=body)

    def get_status(self) -> Dict[str, Any]:
        return self._request("GET", "/sync/status")
