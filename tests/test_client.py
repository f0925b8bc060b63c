"""Tests for request/response correlation, the handshake and disposal."""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from mcp_sse_client.client import ClientState, McpClient
from mcp_sse_client.config import ClientOptions
from mcp_sse_client.errors import (
    ClientDisposedError,
    ClientStateError,
    DeliveryError,
    DuplicateRequestIdError,
    JsonRpcError,
    RequestTimeoutError,
)
from mcp_sse_client.observer import ClientObserver
from mcp_sse_client.sse_transport import SseEvent


def response_event(request_id: str, result: Any = None, error: Any = None) -> SseEvent:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        message["error"] = error
    else:
        message["result"] = result
    return SseEvent(event="message", data=json.dumps(message))


class FakeServer:
    """Answers posted requests by pushing response events onto the stream."""

    def __init__(self) -> None:
        self.results: dict[str, Any] = {}
        self.reject_versions: set[str] = set()
        self.init_extra: dict[str, Any] = {}

    def __call__(self, payload: dict[str, Any]) -> list[SseEvent]:
        if "id" not in payload:
            return []
        method = payload["method"]
        if method == "initialize":
            version = payload["params"]["protocolVersion"]
            if version in self.reject_versions:
                error = {"code": -32602, "message": "Invalid request parameters"}
                return [response_event(payload["id"], error=error)]
            result = {
                "protocolVersion": version,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0.1"},
                **self.init_extra,
            }
            return [response_event(payload["id"], result)]
        if method not in self.results:
            return []
        value = self.results[method]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(payload)
        return [response_event(payload["id"], value)]


class FakeTransport:
    """In-memory stand-in for SseTransport."""

    def __init__(self, responder: Callable[[dict[str, Any]], list[SseEvent]]) -> None:
        self.responder = responder
        self.session_id: str | None = None
        self.endpoints: list[str] = []
        self.sent: list[dict[str, Any]] = []
        self.close_calls = 0
        self._queue: asyncio.Queue[SseEvent | None] = asyncio.Queue()

    def push(self, event: SseEvent | None) -> None:
        self._queue.put_nowait(event)

    async def connect(self) -> AsyncIterator[SseEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[SseEvent]:
        while (event := await self._queue.get()) is not None:
            yield event

    def set_messages_endpoint_from_event(self, endpoint: str) -> None:
        if endpoint.startswith(("http://", "https://")):
            httpx.URL(endpoint)
        if endpoint == "/unresolvable":
            raise RuntimeError("resolver failure")
        self.endpoints.append(endpoint)
        if "session_id=" in endpoint:
            self.session_id = endpoint.split("session_id=", 1)[1]

    async def post_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)
        for event in self.responder(payload):
            self.push(event)

    async def aclose(self) -> None:
        self.close_calls += 1

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [p for p in self.sent if p.get("method") == method]


class RecordingObserver(ClientObserver):
    def __init__(self) -> None:
        self.states: list[tuple[ClientState, ClientState]] = []
        self.timed_out: list[str] = []
        self.resolved: list[str] = []
        self.discarded: list[Any] = []

    def on_state_change(self, old: ClientState, new: ClientState) -> None:
        self.states.append((old, new))

    def on_call_timed_out(self, request_id: str, method: str | None) -> None:
        self.timed_out.append(request_id)

    def on_call_resolved(self, request_id: str, method: str | None) -> None:
        self.resolved.append(request_id)

    def on_event_discarded(self, outcome: Any) -> None:
        self.discarded.append(outcome)


async def settle() -> None:
    """Let the reader task drain whatever is queued."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def transport(server: FakeServer) -> FakeTransport:
    return FakeTransport(server)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


def make_client(transport: FakeTransport, **kwargs: Any) -> McpClient:
    kwargs.setdefault("connect_grace", 0)
    return McpClient("https://host/sse", transport=transport, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_connect_performs_handshake(transport: FakeTransport, observer: RecordingObserver) -> None:
    client = make_client(transport, observer=observer)
    await client.connect()

    assert client.state is ClientState.CONNECTED
    assert client.is_connected
    assert client.protocol_version == "2025-06-18"
    assert client.server_info == {"name": "fake", "version": "0.1"}
    assert client.pending_count == 0

    init, initialized = transport.sent
    assert init["method"] == "initialize"
    assert init["id"].startswith("initialize_")
    assert init["params"]["protocolVersion"] == "2025-06-18"
    assert init["params"]["clientInfo"] == {"name": "mcp-sse-client", "version": "1.0.0"}
    assert initialized["method"] == "notifications/initialized"
    assert "id" not in initialized

    assert observer.states == [
        (ClientState.DISCONNECTED, ClientState.CONNECTING),
        (ClientState.CONNECTING, ClientState.CONNECTED),
    ]
    await client.aclose()


@pytest.mark.asyncio
async def test_initialize_falls_back_to_legacy_version(server: FakeServer, transport: FakeTransport) -> None:
    server.reject_versions.add("2025-06-18")
    client = make_client(transport)
    await client.connect()

    versions = [p["params"]["protocolVersion"] for p in transport.requests("initialize")]
    assert versions == ["2025-06-18", "2024-11-05"]
    assert client.protocol_version == "2024-11-05"
    assert len(transport.requests("notifications/initialized")) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_initialize_fallback_is_attempted_once(server: FakeServer, transport: FakeTransport) -> None:
    server.reject_versions.update({"2025-06-18", "2024-11-05"})
    client = make_client(transport)
    with pytest.raises(JsonRpcError, match="Invalid request parameters"):
        await client.connect()

    assert len(transport.requests("initialize")) == 2
    assert transport.requests("notifications/initialized") == []
    assert client.state is ClientState.DISPOSED
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_legacy_version_is_not_retried(server: FakeServer, transport: FakeTransport) -> None:
    server.reject_versions.add("2024-11-05")
    client = make_client(transport, options=ClientOptions(protocol_version="2024-11-05"))
    with pytest.raises(JsonRpcError):
        await client.connect()

    assert len(transport.requests("initialize")) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_other_initialize_errors_propagate(transport: FakeTransport) -> None:
    def reject(payload: dict[str, Any]) -> list[SseEvent]:
        return [response_event(payload["id"], error={"code": -32601, "message": "Method not found"})]

    transport.responder = reject
    client = make_client(transport)
    with pytest.raises(JsonRpcError, match="Method not found"):
        await client.connect()

    assert len(transport.requests("initialize")) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_initialize_result_session_id_is_adopted(server: FakeServer, transport: FakeTransport) -> None:
    server.init_extra = {"sessionId": "from-init"}
    client = make_client(transport)
    await client.connect()

    assert client.session_id == "from-init"
    assert transport.session_id == "from-init"
    await client.aclose()


@pytest.mark.asyncio
async def test_endpoint_event_resolves_before_handshake(server: FakeServer, transport: FakeTransport) -> None:
    server.init_extra = {"session_id": "ignored-because-known"}
    transport.push(SseEvent(event="endpoint", data=" /messages/?session_id=abc123 "))
    client = make_client(transport, connect_grace=0.01)
    await client.connect()

    assert transport.endpoints == ["/messages/?session_id=abc123"]
    assert client.session_id == "abc123"
    await client.aclose()


@pytest.mark.asyncio
async def test_session_event_overwrites_session_id(transport: FakeTransport) -> None:
    client = make_client(transport)
    await client.connect()

    transport.push(SseEvent(event="session", data='{"session_id": "first"}'))
    transport.push(SseEvent(event="Session", data="sessionId=second"))
    await settle()

    assert client.session_id == "second"
    assert transport.session_id == "second"
    await client.aclose()


@pytest.mark.asyncio
async def test_send_request_resolves_once(
    server: FakeServer,
    transport: FakeTransport,
    observer: RecordingObserver,
) -> None:
    server.results["tools/list"] = {"tools": [{"name": "echo"}]}
    client = make_client(transport, observer=observer)
    await client.connect()

    result = await client.send_request("tools/list", timeout=0.05)
    assert result == {"tools": [{"name": "echo"}]}
    assert client.pending_count == 0

    # The timer was cancelled: nothing fires after the timeout elapses.
    await asyncio.sleep(0.1)
    assert observer.timed_out == []
    assert len([r for r in observer.resolved if r.startswith("tools/list_")]) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_request_times_out(transport: FakeTransport, observer: RecordingObserver) -> None:
    client = make_client(transport, observer=observer)
    await client.connect()

    with pytest.raises(RequestTimeoutError) as exc_info:
        await client.send_request("slow/method", timeout=0.05)

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.request_id.startswith("slow/method_")
    assert client.pending_count == 0
    assert observer.timed_out == [exc_info.value.request_id]
    await client.aclose()


@pytest.mark.asyncio
async def test_default_request_timeout_applies(transport: FakeTransport) -> None:
    client = make_client(transport, request_timeout=0.05)
    await client.connect()

    with pytest.raises(RequestTimeoutError):
        await client.list_resources()
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_error_response_fails_call(server: FakeServer, transport: FakeTransport) -> None:
    def fail(payload: dict[str, Any]) -> list[SseEvent]:
        return [response_event(payload["id"], error={"code": -32000, "message": "boom", "data": {"x": 1}})]

    server.results["tools/call"] = fail
    server.results["resources/read"] = lambda payload: [response_event(payload["id"], error={"code": 1})]
    client = make_client(transport)
    await client.connect()

    with pytest.raises(JsonRpcError) as exc_info:
        await client.call_tool("explode")
    assert exc_info.value.message == "boom"
    assert exc_info.value.code == -32000
    assert exc_info.value.data == {"x": 1}

    with pytest.raises(JsonRpcError, match="Unknown error"):
        await client.read_resource("file:///x")
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_garbage_does_not_affect_pending_calls(transport: FakeTransport, observer: RecordingObserver) -> None:
    client = make_client(transport, id_factory=lambda: "1", observer=observer)
    await client.connect()

    task = asyncio.create_task(client.send_request("wait"))
    await settle()
    transport.push(SseEvent(data=": keep-alive"))
    transport.push(SseEvent(event="message", data="not json at all"))
    await settle()

    assert client.pending_count == 1
    assert not task.done()
    assert len(observer.discarded) == 2

    transport.push(response_event("wait_1", {"ok": True}))
    assert await task == {"ok": True}
    await client.aclose()


@pytest.mark.asyncio
async def test_malformed_endpoint_event_does_not_stop_dispatch(
    transport: FakeTransport,
    observer: RecordingObserver,
) -> None:
    client = make_client(transport, id_factory=lambda: "1", observer=observer)
    await client.connect()

    task = asyncio.create_task(client.send_request("tools/list", timeout=5))
    await settle()
    transport.push(SseEvent(event="endpoint", data="http://host:abc/messages/"))
    transport.push(response_event("tools/list_1", {"tools": []}))

    assert await asyncio.wait_for(task, timeout=1) == {"tools": []}
    assert transport.endpoints == []
    assert len(observer.discarded) == 1
    assert observer.discarded[0].data == "http://host:abc/messages/"
    assert observer.discarded[0].reason.startswith("invalid endpoint")
    assert not client._reader_task.done()  # noqa: SLF001
    await client.aclose()


@pytest.mark.asyncio
async def test_failing_event_handling_does_not_stop_dispatch(transport: FakeTransport) -> None:
    client = make_client(transport, id_factory=lambda: "1")
    await client.connect()

    task = asyncio.create_task(client.send_request("wait", timeout=5))
    await settle()
    transport.push(SseEvent(event="endpoint", data="/unresolvable"))
    transport.push(SseEvent(event="endpoint", data="/messages/?session_id=after"))
    transport.push(response_event("wait_1", "done"))

    assert await asyncio.wait_for(task, timeout=1) == "done"
    assert transport.endpoints == ["/messages/?session_id=after"]
    assert client.session_id == "after"
    await client.aclose()


@pytest.mark.asyncio
async def test_unmatched_response_is_discarded(transport: FakeTransport) -> None:
    client = make_client(transport, id_factory=lambda: "1")
    await client.connect()

    task = asyncio.create_task(client.send_request("wait"))
    await settle()
    transport.push(response_event("someone-else", {"stolen": True}))
    await settle()
    assert client.pending_count == 1

    transport.push(response_event("wait_1", "mine"))
    assert await task == "mine"
    await client.aclose()


@pytest.mark.asyncio
async def test_multiple_responses_in_one_event(transport: FakeTransport) -> None:
    counter = itertools.count(1)
    client = make_client(transport, id_factory=lambda: str(next(counter)))
    await client.connect()

    first = asyncio.create_task(client.send_request("a"))
    second = asyncio.create_task(client.send_request("b"))
    await settle()
    ids = [p["id"] for p in transport.sent if p.get("method") in {"a", "b"}]
    assert ids == ["a_2", "b_3"]

    lines = "\n".join(
        json.dumps({"jsonrpc": "2.0", "id": request_id, "result": request_id}) for request_id in reversed(ids)
    )
    transport.push(SseEvent(event="message", data=lines))

    assert await first == "a_2"
    assert await second == "b_3"
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_notifications_reach_handler(transport: FakeTransport) -> None:
    received: list[tuple[str, Any]] = []

    async def handler(method: str, params: dict[str, Any] | None) -> None:
        if method == "notifications/broken":
            raise RuntimeError("handler bug")
        received.append((method, params))

    client = make_client(transport, notification_handler=handler, id_factory=lambda: "1")
    await client.connect()

    transport.push(SseEvent(data='{"jsonrpc": "2.0", "method": "notifications/broken"}'))
    transport.push(SseEvent(data='{"jsonrpc": "2.0", "method": "notifications/progress", "params": {"p": 1}}'))
    await settle()
    assert received == [("notifications/progress", {"p": 1})]

    # A failing handler does not stop the reader.
    task = asyncio.create_task(client.send_request("after"))
    await settle()
    transport.push(response_event("after_1", 42))
    assert await task == 42
    await client.aclose()


@pytest.mark.asyncio
async def test_sync_notification_handler(transport: FakeTransport) -> None:
    received: list[str] = []
    client = make_client(transport, notification_handler=lambda method, params: received.append(method))
    await client.connect()

    transport.push(SseEvent(data='{"method": "notifications/tools/list_changed"}'))
    await settle()
    assert received == ["notifications/tools/list_changed"]
    await client.aclose()


@pytest.mark.asyncio
async def test_aclose_fails_outstanding_calls(transport: FakeTransport, observer: RecordingObserver) -> None:
    client = make_client(transport, observer=observer)
    await client.connect()

    first = asyncio.create_task(client.send_request("one"))
    second = asyncio.create_task(client.send_request("two"))
    await settle()
    assert client.pending_count == 2

    await client.aclose()
    for task in (first, second):
        with pytest.raises(ClientDisposedError, match="Client disposed"):
            await task

    assert client.pending_count == 0
    assert client.state is ClientState.DISPOSED
    assert transport.close_calls == 1
    assert observer.states[-1] == (ClientState.CONNECTED, ClientState.DISPOSED)

    await client.aclose()
    assert transport.close_calls == 1

    with pytest.raises(ClientDisposedError):
        await client.send_request("three")
    with pytest.raises(ClientDisposedError):
        await client.send_notification("notifications/cancelled")
    with pytest.raises(ClientDisposedError):
        await client.connect()


@pytest.mark.asyncio
async def test_delivery_failure_leaves_call_pending(server: FakeServer, transport: FakeTransport) -> None:
    server.results["rejected"] = DeliveryError(400, "bad request", "https://host/messages/")
    client = make_client(transport)
    await client.connect()

    with pytest.raises(DeliveryError):
        await client.send_request("rejected", timeout=0.05)
    assert client.pending_count == 1

    await asyncio.sleep(0.1)
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_notification_delivery_failure_propagates(server: FakeServer, transport: FakeTransport) -> None:
    client = make_client(transport)
    await client.connect()

    def reject(payload: dict[str, Any]) -> list[SseEvent]:
        raise DeliveryError(500, "down", "https://host/messages/")

    transport.responder = reject
    with pytest.raises(DeliveryError):
        await client.send_notification("notifications/progress", {"progress": 1})
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_injected_id_factory(server: FakeServer, transport: FakeTransport) -> None:
    counter = itertools.count(1)
    server.results["tools/list"] = {"tools": []}
    client = make_client(transport, id_factory=lambda: f"n{next(counter)}")
    await client.connect()
    await client.list_tools()

    assert [p["id"] for p in transport.sent if "id" in p] == ["initialize_n1", "tools/list_n2"]
    await client.aclose()


@pytest.mark.asyncio
async def test_duplicate_request_id_is_rejected(transport: FakeTransport) -> None:
    client = make_client(transport, id_factory=lambda: "same")
    await client.connect()

    task = asyncio.create_task(client.send_request("wait"))
    await settle()
    with pytest.raises(DuplicateRequestIdError):
        await client.send_request("wait")
    assert client.pending_count == 1

    transport.push(response_event("wait_same", "done"))
    assert await task == "done"
    await client.aclose()


@pytest.mark.asyncio
async def test_cancelled_call_is_removed(transport: FakeTransport) -> None:
    client = make_client(transport)
    await client.connect()

    task = asyncio.create_task(client.send_request("wait"))
    await settle()
    assert client.pending_count == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.pending_count == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_operations_before_connect(transport: FakeTransport) -> None:
    client = make_client(transport)
    with pytest.raises(ClientStateError):
        await client.send_request("tools/list")

    await client.connect()
    with pytest.raises(ClientStateError):
        await client.connect()
    await client.aclose()


@pytest.mark.asyncio
async def test_convenience_calls_shape_params(server: FakeServer, transport: FakeTransport) -> None:
    for method in ("tools/list", "tools/call", "resources/list", "resources/read"):
        server.results[method] = {"method": method}
    client = make_client(transport)
    await client.connect()

    assert await client.list_tools() == {"method": "tools/list"}
    assert await client.call_tool("echo", {"text": "hi"}) == {"method": "tools/call"}
    assert await client.list_resources() == {"method": "resources/list"}
    assert await client.read_resource("file:///a.txt") == {"method": "resources/read"}

    assert transport.requests("tools/call")[0]["params"] == {"name": "echo", "arguments": {"text": "hi"}}
    assert transport.requests("resources/read")[0]["params"] == {"uri": "file:///a.txt"}
    assert transport.requests("tools/list")[0]["params"] == {}
    await client.aclose()


@pytest.mark.asyncio
async def test_async_context_manager(transport: FakeTransport) -> None:
    async with make_client(transport) as client:
        assert client.is_connected
    assert client.state is ClientState.DISPOSED
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_async_context_manager_closes_on_connect_failure(transport: FakeTransport) -> None:
    transport.responder = lambda payload: [
        response_event(payload["id"], error={"message": "unauthorized"}),
    ] if "id" in payload else []

    with pytest.raises(JsonRpcError):
        async with make_client(transport):
            pass
    assert transport.close_calls == 1


@pytest.mark.asyncio
async def test_failed_connect_releases_resources(transport: FakeTransport, observer: RecordingObserver) -> None:
    transport.responder = lambda payload: [
        response_event(payload["id"], error={"message": "unauthorized"}),
    ] if "id" in payload else []
    client = make_client(transport, observer=observer)

    with pytest.raises(JsonRpcError, match="unauthorized"):
        await client.connect()

    assert client.state is ClientState.DISPOSED
    assert observer.states[-1] == (ClientState.CONNECTING, ClientState.DISPOSED)
    assert client._reader_task.done()  # noqa: SLF001
    assert transport.close_calls == 1
    assert client.pending_count == 0
    with pytest.raises(ClientDisposedError):
        await client.connect()


@pytest.mark.asyncio
async def test_stream_end_leaves_calls_to_their_timers(transport: FakeTransport) -> None:
    client = make_client(transport)
    await client.connect()

    transport.push(None)
    await settle()
    with pytest.raises(RequestTimeoutError):
        await client.send_request("late", timeout=0.05)
    await client.aclose()
