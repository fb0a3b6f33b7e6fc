"""HTTP transport shared by the witness network and content store clients.

Thin wrapper over ``httpx.Client``: every request carries an explicit
timeout, non-2xx statuses and transport failures surface as
``TransportError``, and bodies come back decoded from JSON. Empty bodies
decode to ``None``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

import httpx

DEFAULT_TIMEOUT_SECONDS = 10.0


class TransportError(Exception):
    """A request failed before producing a usable 2xx response."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class HttpTransport:
    """
    Synchronous JSON-over-HTTP transport.

    ``transport`` lets tests plug in ``httpx.MockTransport``; production
    code uses the default network transport.
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            headers={"Accept": "application/json", **dict(headers or {})},
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    def url_for(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = "/" + path_or_url
        return f"{self.base_url}{path_or_url}"

    def request(
        self,
        method: str,
        path_or_url: str,
        json_body: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Issue one request and return the decoded JSON body."""
        url = self.url_for(path_or_url)
        effective = self.timeout_seconds if timeout is None else timeout
        try:
            response = self._client.request(
                method.upper(),
                url,
                json=json_body,
                timeout=httpx.Timeout(effective),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method.upper()} {url} failed: {e}", url=url) from e

        if not response.is_success:
            raise TransportError(
                f"{method.upper()} {url} returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        if not response.content.strip():
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TransportError(
                f"{method.upper()} {url} returned a non-JSON body",
                url=url,
                status_code=response.status_code,
            ) from e

    def get(self, path_or_url: str, timeout: Optional[float] = None) -> Any:
        return self.request("GET", path_or_url, timeout=timeout)

    def post(self, path_or_url: str, json_body: Any, timeout: Optional[float] = None) -> Any:
        return self.request("POST", path_or_url, json_body=json_body, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def api_key_headers(api_key: str) -> Dict[str, str]:
    return {"x-api-key": api_key} if api_key else {}
