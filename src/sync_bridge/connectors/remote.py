"""
Remote business-object API client.

Defines the model-oriented RPC interface the sync engine talks to and a
JSON-RPC implementation for Odoo-style ``execute_kw`` endpoints:
- create / write / unlink / search / read / execute on named models
- Lazy authentication, one uid per client
- Server faults mapped onto a typed exception hierarchy
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from sync_bridge.config import Settings


logger = logging.getLogger("sync_bridge.remote")


class RemoteError(Exception):
    """Base exception for remote API errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class RemoteTransportError(RemoteError):
    """Raised on connection failures, timeouts and 5xx responses."""

    pass


class RemoteRateLimitError(RemoteError):
    """Raised when the remote system throttles requests."""

    def __init__(self, retry_after: int = 60) -> None:
        super().__init__(f"Rate limit exceeded. Retry after {retry_after}s", status=429)
        self.retry_after = retry_after


class RemoteAccessError(RemoteError):
    """Raised when credentials are rejected or access is denied."""

    pass


class RemoteValidationError(RemoteError):
    """Raised when the remote system rejects the submitted values."""

    pass


class RemoteModelNotFoundError(RemoteError):
    """Raised when the target model does not exist on the remote system."""

    pass


class RemoteRecordNotFoundError(RemoteError):
    """Raised when a record referenced by id no longer exists."""

    pass


@runtime_checkable
class RemoteClient(Protocol):
    """Model-oriented RPC surface of the remote system."""

    def create(self, model: str, values: dict[str, Any]) -> int: ...

    def write(self, model: str, record_id: int, values: dict[str, Any]) -> bool: ...

    def unlink(self, model: str, record_id: int) -> bool: ...

    def search(
        self,
        model: str,
        domain: list[Any],
        limit: int | None = None,
    ) -> list[int]: ...

    def read(
        self,
        model: str,
        ids: list[int],
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    def execute(self, model: str, method: str, args: list[Any]) -> Any: ...


# Server-side exception names mapped to client exceptions
_FAULT_TYPES: list[tuple[str, type[RemoteError]]] = [
    ("AccessDenied", RemoteAccessError),
    ("AccessError", RemoteAccessError),
    ("ValidationError", RemoteValidationError),
    ("UserError", RemoteValidationError),
    ("MissingError", RemoteRecordNotFoundError),
]


class JsonRpcClient:
    """
    JSON-RPC client for Odoo-style remote systems.

    Example:
        client = JsonRpcClient(
            url="https://erp.example.com",
            database="prod",
            username="sync@example.com",
            api_key="your-api-key",
        )

        partner_id = client.create("res.partner", {"name": "Alice"})
        client.write("res.partner", partner_id, {"email": "alice@example.com"})
        ids = client.search("res.partner", [["email", "=", "alice@example.com"]])
    """

    def __init__(
        self,
        url: str,
        database: str,
        username: str,
        api_key: str,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            url: Base URL of the remote system
            database: Remote database name
            username: Login of the integration user
            api_key: API key or password
            timeout: Per-request timeout in seconds
            verify_ssl: Verify TLS certificates
            transport: Optional httpx transport (used by tests)
        """
        self.url = url.rstrip("/")
        self.database = database
        self.username = username
        self.api_key = api_key
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._transport = transport

        self._client: httpx.Client | None = None
        self._uid: int | None = None
        self._request_id = 0

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.url,
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                verify=self.verify_ssl,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "JsonRpcClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _call(self, service: str, method: str, args: list[Any]) -> Any:
        """
        Perform one JSON-RPC call and translate failures.

        Raises:
            RemoteTransportError: Connection failure, timeout or 5xx
            RemoteRateLimitError: HTTP 429
            RemoteError: Any other fault (or a typed subclass)
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": self._request_id,
        }

        try:
            response = self._get_client().post("/jsonrpc", json=payload)
        except httpx.TimeoutException as e:
            raise RemoteTransportError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise RemoteTransportError(f"Connection error: {e}") from e

        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", "60"))
            raise RemoteRateLimitError(retry_after)
        if response.status_code >= 500:
            raise RemoteTransportError(
                f"Server error (HTTP {response.status_code})",
                status=response.status_code,
            )
        if response.status_code in (401, 403):
            raise RemoteAccessError(
                f"Access denied (HTTP {response.status_code})",
                status=response.status_code,
            )
        if response.status_code >= 400:
            raise RemoteError(
                f"Unexpected HTTP {response.status_code}",
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteTransportError(
                f"Invalid JSON response (HTTP {response.status_code})",
                status=response.status_code,
            ) from e

        if "error" in body:
            raise self._fault_to_exception(body["error"])

        return body.get("result")

    @staticmethod
    def _fault_to_exception(error: dict[str, Any]) -> RemoteError:
        """Map a JSON-RPC error object onto the exception hierarchy."""
        data = error.get("data") or {}
        name = str(data.get("name", ""))
        message = str(data.get("message") or error.get("message") or "Unknown RPC error")
        code = str(error.get("code", "")) or None

        for fault_name, exc_type in _FAULT_TYPES:
            if fault_name in name:
                return exc_type(message, code=code)

        if name.endswith("KeyError") or "doesn't exist" in message:
            return RemoteModelNotFoundError(message, code=code)

        return RemoteError(message, code=code)

    def authenticate(self) -> int:
        """Log in and cache the user id."""
        uid = self._call("common", "login", [self.database, self.username, self.api_key])
        if not uid:
            raise RemoteAccessError("Authentication failed: invalid credentials.")
        self._uid = int(uid)
        logger.debug("Authenticated against %s as uid %s", self.url, self._uid)
        return self._uid

    def execute_kw(
        self,
        model: str,
        method: str,
        args: list[Any],
        kwargs: dict[str, Any] | None = None,
    ) -> Any:
        """Call ``method`` on ``model`` with positional and keyword arguments."""
        if self._uid is None:
            self.authenticate()
        return self._call(
            "object",
            "execute_kw",
            [self.database, self._uid, self.api_key, model, method, args, kwargs or {}],
        )

    def create(self, model: str, values: dict[str, Any]) -> int:
        result = self.execute_kw(model, "create", [values])
        # Newer servers return a list for batch-capable create
        if isinstance(result, list):
            result = result[0] if result else 0
        return int(result)

    def write(self, model: str, record_id: int, values: dict[str, Any]) -> bool:
        return bool(self.execute_kw(model, "write", [[record_id], values]))

    def unlink(self, model: str, record_id: int) -> bool:
        return bool(self.execute_kw(model, "unlink", [[record_id]]))

    def search(
        self,
        model: str,
        domain: list[Any],
        limit: int | None = None,
    ) -> list[int]:
        kwargs = {"limit": limit} if limit else {}
        result = self.execute_kw(model, "search", [domain], kwargs)
        return [int(i) for i in result or []]

    def read(
        self,
        model: str,
        ids: list[int],
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        kwargs = {"fields": fields} if fields else {}
        return list(self.execute_kw(model, "read", [ids], kwargs) or [])

    def execute(self, model: str, method: str, args: list[Any]) -> Any:
        return self.execute_kw(model, method, args)


def create_remote_client(settings: Settings) -> JsonRpcClient:
    """Create a JsonRpcClient from settings."""
    return JsonRpcClient(
        url=settings.remote.url,
        database=settings.remote.database,
        username=settings.remote.username,
        api_key=settings.remote.api_key.get_secret_value(),
        timeout=settings.remote.timeout_seconds,
        verify_ssl=settings.remote.verify_ssl,
    )
