"""Transport layer for the Apps Script execution and Cloud Logging APIs.

Defines the Transport protocol and implementations:
- GoogleCloudTransport: Production transport using the Google REST APIs
- LocalFileTransport: Test transport reading from local golden files
"""

from __future__ import annotations

import json
import ssl
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import certifi
import httpx

from scriptwatch.poller import ErrorKind, NonRetryableError

if TYPE_CHECKING:
    from pathlib import Path

# API constants
SCRIPT_API_BASE = "https://script.googleapis.com/v1"
LOGGING_API_BASE = "https://logging.googleapis.com/v2"
DEFAULT_TIMEOUT = 60


# --- Exceptions ---


class TransportError(Exception):
    """Base exception for transport errors."""


class AuthenticationError(TransportError, NonRetryableError):
    """Raised when authentication fails (401/403)."""


class NotFoundError(TransportError, NonRetryableError):
    """Raised when a script or logging resource is not found (404)."""


class APIError(TransportError):
    """Raised when the API returns an error."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def classify_transport_error(exc: BaseException) -> ErrorKind:
    """Poller classifier: auth and missing resources abort, the rest retry."""
    if isinstance(exc, NonRetryableError):
        return ErrorKind.NON_RETRYABLE
    return ErrorKind.QUERY_FAILED


# --- Abstract Transport ---


class Transport(ABC):
    """Abstract base class for script execution and log queries."""

    @abstractmethod
    async def run_function(
        self,
        script_id: str,
        function: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> dict[str, Any]:
        """Execute a function in an Apps Script project.

        Args:
            script_id: The Apps Script project identifier.
            function: Name of the function to run.
            parameters: Positional arguments for the function.
            dev_mode: Run against the most recently saved code.

        Returns:
            Raw ``scripts.run`` operation dict (``done``, ``response``,
            ``error``).
        """
        ...

    @abstractmethod
    async def list_log_entries(
        self,
        resource_names: list[str],
        log_filter: str,
        order_by: str = "timestamp desc",
        page_size: int = 50,
    ) -> list[dict[str, Any]]:
        """Query Cloud Logging entries.

        Args:
            resource_names: Parent resources, e.g. ``["projects/my-project"]``.
            log_filter: Cloud Logging filter expression.
            order_by: Sort order.
            page_size: Maximum entries to return.

        Returns:
            List of raw LogEntry dicts (possibly empty).
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        ...


# --- Google Cloud Transport ---


class GoogleCloudTransport(Transport):
    """Production transport talking to the Apps Script and Logging APIs.

    Handles authentication, SSL, and HTTP communication.
    """

    def __init__(
        self,
        access_token: str,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the transport.

        Args:
            access_token: OAuth2 access token with script and logging.read scopes.
            timeout: Request timeout in seconds.
        """
        self._timeout = timeout
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        self._client = httpx.AsyncClient(
            timeout=timeout,
            verify=ssl_context,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )

    async def run_function(
        self,
        script_id: str,
        function: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> dict[str, Any]:
        """Execute a function via the Apps Script API."""
        url = f"{SCRIPT_API_BASE}/scripts/{script_id}:run"
        body: dict[str, Any] = {"function": function, "devMode": dev_mode}
        if parameters:
            body["parameters"] = parameters
        return await self._post(url, body)

    async def list_log_entries(
        self,
        resource_names: list[str],
        log_filter: str,
        order_by: str = "timestamp desc",
        page_size: int = 50,
    ) -> list[dict[str, Any]]:
        """Query entries via the Cloud Logging API."""
        url = f"{LOGGING_API_BASE}/entries:list"
        body: dict[str, Any] = {
            "resourceNames": resource_names,
            "filter": log_filter,
            "orderBy": order_by,
            "pageSize": page_size,
        }
        data = await self._post(url, body)
        entries: list[dict[str, Any]] = data.get("entries", [])
        return entries

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    # --- HTTP helpers ---

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(url, json=body)
            resp.raise_for_status()
            result: dict[str, Any] = resp.json()
            return result
        except httpx.HTTPStatusError as e:
            raise self._handle_http_error(e) from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e

    def _handle_http_error(self, e: httpx.HTTPStatusError) -> TransportError:
        """Convert HTTP errors to appropriate transport exceptions."""
        status = e.response.status_code
        if status == 401:
            return AuthenticationError("Invalid or expired access token")
        if status == 403:
            body = e.response.text
            return AuthenticationError(
                f"Access denied (403): {body}. "
                "Running scripts requires a user OAuth token with the script's "
                "scopes, and reading logs requires logging.read."
            )
        if status == 404:
            return NotFoundError(
                "Resource not found. Check the script ID, deployment access, "
                "and GCP project ID."
            )
        body = e.response.text
        return APIError(f"API error ({status}): {body}", status_code=status)


# --- Local File Transport ---


class LocalFileTransport(Transport):
    """Test transport that reads from local golden files.

    Expected directory structure:
        golden_dir/
            run.json         # scripts.run response
            entries.json     # entries.list response ({"entries": [...]})
    """

    def __init__(self, golden_dir: Path) -> None:
        """Initialize the transport.

        Args:
            golden_dir: Directory containing golden test files.
        """
        self._golden_dir = golden_dir
        self._run_calls: list[dict[str, Any]] = []
        self._list_calls: list[dict[str, Any]] = []

    async def run_function(
        self,
        script_id: str,
        function: str,
        parameters: list[Any] | None = None,
        dev_mode: bool = True,
    ) -> dict[str, Any]:
        """Record the run call and return the golden response."""
        self._run_calls.append(
            {
                "script_id": script_id,
                "function": function,
                "parameters": parameters,
                "dev_mode": dev_mode,
            }
        )
        path = self._golden_dir / "run.json"
        if not path.exists():
            raise NotFoundError(f"Golden file not found: {path}")
        data: dict[str, Any] = json.loads(path.read_text())
        return data

    async def list_log_entries(
        self,
        resource_names: list[str],
        log_filter: str,
        order_by: str = "timestamp desc",
        page_size: int = 50,
    ) -> list[dict[str, Any]]:
        """Record the query and return golden entries matching the API filter."""
        self._list_calls.append(
            {
                "resource_names": resource_names,
                "log_filter": log_filter,
                "order_by": order_by,
                "page_size": page_size,
            }
        )
        path = self._golden_dir / "entries.json"
        if not path.exists():
            raise NotFoundError(f"Golden file not found: {path}")
        entries: list[dict[str, Any]] = json.loads(path.read_text()).get("entries", [])
        if 'invocation_type="apps script api"' in log_filter:
            entries = [
                e
                for e in entries
                if e.get("resource", {}).get("labels", {}).get("invocation_type")
                == "apps script api"
            ]
        return entries[:page_size]

    async def close(self) -> None:
        """No-op for local file transport."""

    @property
    def run_calls(self) -> list[dict[str, Any]]:
        """Get recorded run calls (for test assertions)."""
        return self._run_calls

    @property
    def list_calls(self) -> list[dict[str, Any]]:
        """Get recorded log queries (for test assertions)."""
        return self._list_calls
