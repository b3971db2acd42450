"""Tests for the JSON-RPC remote client."""

import json
from typing import Any, Callable

import httpx
import pytest

from sync_bridge.config import Settings
from sync_bridge.connectors.remote import (
    JsonRpcClient,
    RemoteAccessError,
    RemoteClient,
    RemoteError,
    RemoteModelNotFoundError,
    RemoteRateLimitError,
    RemoteRecordNotFoundError,
    RemoteTransportError,
    RemoteValidationError,
    create_remote_client,
)


Handler = Callable[[dict[str, Any]], httpx.Response]


def rpc_result(request_body: dict[str, Any], result: Any) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_body["id"], "result": result})


def rpc_fault(name: str, message: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "jsonrpc": "2.0",
            "id": 1,
            "error": {"code": 200, "message": "Server Error", "data": {"name": name, "message": message}},
        },
    )


class Recorder:
    """Mock JSON-RPC server answering login and routing object calls."""

    def __init__(self, handler: Handler | None = None, uid: Any = 2) -> None:
        self.handler = handler
        self.uid = uid
        self.requests: list[dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        params = body["params"]
        if params["service"] == "common":
            return rpc_result(body, self.uid)
        if self.handler is None:
            return rpc_result(body, True)
        return self.handler(body)

    def object_calls(self) -> list[list[Any]]:
        return [r["params"]["args"] for r in self.requests if r["params"]["service"] == "object"]


def make_client(recorder: Callable[[httpx.Request], httpx.Response]) -> JsonRpcClient:
    return JsonRpcClient(
        url="https://erp.example.com/",
        database="prod",
        username="sync",
        api_key="key",
        transport=httpx.MockTransport(recorder),
    )


class TestJsonRpcClient:
    """Test JsonRpcClient class."""

    def test_satisfies_protocol(self) -> None:
        """Test the client implements the remote interface."""
        assert isinstance(make_client(Recorder()), RemoteClient)

    def test_authenticates_lazily_once(self) -> None:
        """Test login happens on the first call only."""
        recorder = Recorder(lambda body: rpc_result(body, 41))
        client = make_client(recorder)

        assert client.create("res.partner", {"name": "Alice"}) == 41
        client.write("res.partner", 41, {"name": "Bob"})

        services = [r["params"]["service"] for r in recorder.requests]
        assert services == ["common", "object", "object"]
        assert recorder.requests[0]["params"]["args"] == ["prod", "sync", "key"]
        assert recorder.object_calls()[0] == [
            "prod", 2, "key", "res.partner", "create", [{"name": "Alice"}], {},
        ]
        assert recorder.object_calls()[1][4:6] == ["write", [[41], {"name": "Bob"}]]

    def test_create_accepts_list_result(self) -> None:
        """Test batch-style create results are unwrapped."""
        client = make_client(Recorder(lambda body: rpc_result(body, [77])))
        assert client.create("res.partner", {"name": "Alice"}) == 77

    def test_search_and_read(self) -> None:
        """Test search passes the limit and read passes the fields."""

        def handler(body: dict[str, Any]) -> httpx.Response:
            method = body["params"]["args"][4]
            if method == "search":
                return rpc_result(body, [3, 4])
            return rpc_result(body, [{"id": 3, "name": "A"}])

        recorder = Recorder(handler)
        client = make_client(recorder)

        assert client.search("res.partner", [["name", "=", "A"]], limit=1) == [3, 4]
        assert client.read("res.partner", [3], ["name"]) == [{"id": 3, "name": "A"}]
        search_call, read_call = recorder.object_calls()
        assert search_call[6] == {"limit": 1}
        assert read_call[6] == {"fields": ["name"]}

    def test_failed_login(self) -> None:
        """Test a falsy uid is an access error."""
        client = make_client(Recorder(uid=False))
        with pytest.raises(RemoteAccessError):
            client.authenticate()

    @pytest.mark.parametrize(
        ("name", "message", "expected"),
        [
            ("odoo.exceptions.AccessError", "Not allowed", RemoteAccessError),
            ("odoo.exceptions.ValidationError", "Bad value", RemoteValidationError),
            ("odoo.exceptions.UserError", "Missing field", RemoteValidationError),
            ("odoo.exceptions.MissingError", "Record does not exist", RemoteRecordNotFoundError),
            ("builtins.KeyError", "'x.model'", RemoteModelNotFoundError),
            ("builtins.Exception", "Object x.model doesn't exist", RemoteModelNotFoundError),
        ],
    )
    def test_fault_mapping(self, name: str, message: str, expected: type) -> None:
        """Test server faults map onto typed exceptions."""
        client = make_client(Recorder(lambda body: rpc_fault(name, message)))
        with pytest.raises(expected) as exc_info:
            client.create("x.model", {"a": 1})
        assert message in str(exc_info.value)

    def test_unknown_fault(self) -> None:
        """Test unrecognized faults raise the base error."""
        client = make_client(Recorder(lambda body: rpc_fault("odoo.Weird", "?")))
        with pytest.raises(RemoteError) as exc_info:
            client.unlink("x.model", 1)
        assert type(exc_info.value) is RemoteError

    def test_rate_limit(self) -> None:
        """Test HTTP 429 carries the retry delay."""
        client = make_client(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
        with pytest.raises(RemoteRateLimitError) as exc_info:
            client.authenticate()
        assert exc_info.value.retry_after == 12

    def test_server_error_is_transport(self) -> None:
        """Test 5xx responses are transport errors."""
        client = make_client(lambda request: httpx.Response(502))
        with pytest.raises(RemoteTransportError) as exc_info:
            client.authenticate()
        assert exc_info.value.status == 502

    def test_unauthorized(self) -> None:
        """Test 401 responses are access errors."""
        client = make_client(lambda request: httpx.Response(401))
        with pytest.raises(RemoteAccessError):
            client.authenticate()

    def test_connection_error(self) -> None:
        """Test network failures are transport errors."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteTransportError):
            make_client(refuse).authenticate()

    def test_invalid_json(self) -> None:
        """Test a non-JSON body is a transport error."""
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(RemoteTransportError):
            client.authenticate()


class TestCreateRemoteClient:
    """Test create_remote_client helper."""

    def test_from_settings(self) -> None:
        """Test the client is built from remote settings."""
        settings = Settings(
            remote={
                "url": "https://erp.example.com/",
                "database": "prod",
                "username": "sync",
                "api_key": "key",
                "timeout_seconds": 5,
            }
        )
        client = create_remote_client(settings)

        assert client.url == "https://erp.example.com"
        assert client.api_key == "key"
        assert client.timeout == 5
