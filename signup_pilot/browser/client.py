"""Remote browser automation provider clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from signup_pilot.browser.models import PageData
from signup_pilot.errors import TransportFailure
from signup_pilot.utils.logging import get_logger

logger = get_logger("browser.client")


class BrowserProvider(ABC):
    """
    Remote browser automation capability.

    Every call is a remote RPC; implementations raise TransportFailure for
    network errors, timeouts and non-2xx responses.
    """

    @abstractmethod
    async def create(self, url: Optional[str] = None) -> str:
        """Create a session, optionally opening ``url``. Returns the session id."""
        ...

    @abstractmethod
    async def navigate(self, session_id: str, url: str) -> PageData:
        """Navigate a session to a URL."""
        ...

    @abstractmethod
    async def interact(self, session_id: str, steps: list[dict[str, Any]]) -> PageData:
        """Run interaction steps (click, fill, select, wait_for) on the current page."""
        ...

    @abstractmethod
    async def extract(
        self,
        session_id: str,
        selector: Optional[str] = None,
        wait_for: Optional[str] = None,
    ) -> PageData:
        """Read the current page, optionally scoped to a selector."""
        ...

    @abstractmethod
    async def close(self, session_id: str) -> None:
        """Release a session."""
        ...

    async def aclose(self) -> None:
        """Release client resources."""
        return None


class HttpBrowserProvider(BrowserProvider):
    """Browserbase-style REST client built on httpx."""

    SESSION_TIMEOUT_MS = 300000

    def __init__(
        self,
        api_url: str,
        api_key: str,
        project_id: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_url: Base URL of the provider API
            api_key: Bearer token
            project_id: Provider project identifier
            timeout: Per-request timeout in seconds
            client: Preconfigured HTTP client (mainly for tests)
        """
        self.api_url = api_url.rstrip("/")
        self.project_id = project_id
        self._client = client or httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout,
        )
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning("browser_request_failed", method=method, path=path, error=str(e))
            raise TransportFailure("browser", str(e) or type(e).__name__) from e

        if not response.is_success:
            logger.warning(
                "browser_request_rejected",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise TransportFailure(
                "browser",
                f"{method} {path} failed: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise TransportFailure("browser", f"Invalid JSON from {path}") from e

    async def create(self, url: Optional[str] = None) -> str:
        body: dict[str, Any] = {
            "projectId": self.project_id,
            "keepAlive": True,
            "timeout": self.SESSION_TIMEOUT_MS,
        }
        if url:
            body["url"] = url

        data = await self._request("POST", "/v1/sessions", json=body)
        session_id = data.get("id")
        if not session_id:
            raise TransportFailure("browser", "Session response did not include an id")

        logger.debug("browser_session_created", session_id=session_id)
        return session_id

    async def navigate(self, session_id: str, url: str) -> PageData:
        data = await self._request(
            "POST",
            f"/v1/sessions/{session_id}/navigate",
            json={"url": url, "waitUntil": "networkidle0"},
        )
        page = PageData.from_dict(data)
        if not page.url:
            page.url = url
        return page

    async def interact(self, session_id: str, steps: list[dict[str, Any]]) -> PageData:
        data = await self._request(
            "POST",
            f"/v1/sessions/{session_id}/actions",
            json={"steps": steps},
        )
        return PageData.from_dict(data)

    async def extract(
        self,
        session_id: str,
        selector: Optional[str] = None,
        wait_for: Optional[str] = None,
    ) -> PageData:
        body: dict[str, Any] = {}
        if selector:
            body["selector"] = selector
        if wait_for:
            body["waitFor"] = wait_for

        data = await self._request("POST", f"/v1/sessions/{session_id}/extract", json=body)
        return PageData.from_dict(data)

    async def close(self, session_id: str) -> None:
        await self._request("DELETE", f"/v1/sessions/{session_id}")
        logger.debug("browser_session_released", session_id=session_id)

    async def aclose(self) -> None:
        await self._client.aclose()
