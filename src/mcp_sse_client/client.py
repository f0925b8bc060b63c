"""MCP client: awaitable JSON-RPC calls over an SSE transport.

Requests are posted to the submission endpoint and answered asynchronously on
the event stream. Each request registers an :class:`OutstandingCall` keyed by
its id; the reader task resolves it when the matching response arrives, and a
loop timer fails it if nothing arrives in time. Everything runs on one event
loop, so the pending map needs no locking.
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from mcp import types

from .config import DEFAULT_REQUEST_TIMEOUT_S, LEGACY_PROTOCOL_VERSION, ClientOptions
from .dispatch import EndpointAnnounced, MessagesReceived, SessionAnnounced, Unparseable, classify_event
from .errors import (
    ClientDisposedError,
    ClientStateError,
    DuplicateRequestIdError,
    JsonRpcError,
    RequestTimeoutError,
)
from .observer import ClientObserver, LoggingObserver
from .sse_transport import SseEvent, SseTransport

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[str, dict[str, Any] | None], Awaitable[None] | None]

# Servers may only accept POSTs once the endpoint event has been seen.
CONNECT_GRACE_S = 0.2


class ClientState(Enum):
    """Lifecycle of a client instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISPOSED = "disposed"


@dataclass
class OutstandingCall:
    """A request waiting for its response."""

    request_id: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle
    method: str | None = None


def _default_id_factory() -> str:
    return str(uuid.uuid4())


def _consume_result(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class McpClient:
    """Client for an MCP server reachable over SSE."""

    def __init__(
        self,
        sse_url: str,
        options: ClientOptions | None = None,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        connect_grace: float = CONNECT_GRACE_S,
        id_factory: Callable[[], str] | None = None,
        observer: ClientObserver | None = None,
        notification_handler: NotificationHandler | None = None,
        transport: SseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            sse_url: URL of the server's event stream, e.g. ``https://host/sse``.
            options: Handshake settings and extra HTTP headers.
            request_timeout: Default seconds to wait for a response.
            connect_grace: Seconds to wait after opening the stream before the
                handshake, so an early ``endpoint`` event can arrive.
            id_factory: Source of the unique token embedded in request ids.
            observer: Receives state changes and call lifecycle events.
            notification_handler: Called with ``(method, params)`` for every
                server-initiated notification. May be a coroutine function.
            transport: Transport to use instead of a new :class:`SseTransport`.
        """
        self.sse_url = sse_url
        self.options = options or ClientOptions()
        self.request_timeout = request_timeout
        self.connect_grace = connect_grace
        self.protocol_version: str | None = None
        self.server_info: dict[str, Any] | None = None
        self.server_capabilities: dict[str, Any] | None = None

        self._id_factory = id_factory or _default_id_factory
        self._observer = observer or LoggingObserver()
        self._notification_handler = notification_handler
        self._transport = transport or SseTransport(sse_url, dict(self.options.headers))
        self._pending: dict[str, OutstandingCall] = {}
        self._state = ClientState.DISCONNECTED
        self._session_id: str | None = None
        self._reader_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "McpClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ClientState.CONNECTED

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a response."""
        return len(self._pending)

    def _set_state(self, state: ClientState) -> None:
        old, self._state = self._state, state
        self._observer.on_state_change(old, state)

    def _set_session_id(self, session_id: str) -> None:
        self._session_id = session_id
        self._transport.session_id = session_id

    def _ensure_open(self) -> None:
        if self._state is ClientState.DISPOSED:
            raise ClientDisposedError("Client disposed")
        if self._state is ClientState.DISCONNECTED:
            raise ClientStateError("Client is not connected")

    async def connect(self) -> None:
        """Open the event stream and perform the initialize handshake.

        A failed connect disposes the client: the reader task and the
        transport are closed before the error propagates.
        """
        if self._state is ClientState.DISPOSED:
            raise ClientDisposedError("Client disposed")
        if self._state is not ClientState.DISCONNECTED:
            raise ClientStateError(f"Cannot connect while {self._state.value}")

        self._set_state(ClientState.CONNECTING)
        logger.info("Connecting SSE: %s", self.sse_url)
        try:
            events = await self._transport.connect()
            self._reader_task = asyncio.create_task(self._read_events(events))

            await asyncio.sleep(self.connect_grace)
            await self._initialize_with_fallback()
        except BaseException:
            await self.aclose()
            raise

        if self._state is ClientState.CONNECTING:
            self._set_state(ClientState.CONNECTED)

    async def _initialize_with_fallback(self) -> Any:
        requested = self.options.protocol_version
        try:
            return await self.initialize(protocol_version=requested)
        except JsonRpcError as exc:
            if requested == LEGACY_PROTOCOL_VERSION or "invalid request parameters" not in exc.message.lower():
                raise
            logger.info(
                "Initialize failed with %s, retrying with %s",
                requested,
                LEGACY_PROTOCOL_VERSION,
            )
        return await self.initialize(protocol_version=LEGACY_PROTOCOL_VERSION)

    async def initialize(self, protocol_version: str | None = None) -> Any:
        """Send ``initialize`` followed by ``notifications/initialized``."""
        version = protocol_version or self.options.protocol_version
        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": version,
                "clientInfo": {
                    "name": self.options.client_name,
                    "version": self.options.client_version,
                },
                "capabilities": dict(self.options.capabilities),
            },
        )

        self.protocol_version = version
        if isinstance(result, dict):
            if self._session_id is None:
                session_id = result.get("session_id") or result.get("sessionId")
                if isinstance(session_id, str) and session_id:
                    self._set_session_id(session_id)
            negotiated = result.get("protocolVersion")
            if isinstance(negotiated, str) and negotiated:
                self.protocol_version = negotiated
            self.server_info = result.get("serverInfo")
            self.server_capabilities = result.get("capabilities")

        await self.send_notification("notifications/initialized")
        return result

    async def list_tools(self) -> Any:
        return await self.send_request("tools/list")

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        return await self.send_request("tools/call", {"name": name, "arguments": dict(arguments or {})})

    async def list_resources(self) -> Any:
        return await self.send_request("resources/list")

    async def read_resource(self, uri: str) -> Any:
        return await self.send_request("resources/read", {"uri": uri})

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Post a notification. Nothing is awaited beyond the HTTP delivery."""
        self._ensure_open()
        payload = types.JSONRPCNotification(
            jsonrpc="2.0",
            method=method,
            params=dict(params or {}),
        ).model_dump(by_alias=True, mode="json")
        logger.debug("-> notification %s", method)
        await self._transport.post_json(payload)

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Post a request and wait for its result.

        Args:
            method: JSON-RPC method name.
            params: Method parameters.
            timeout: Seconds to wait; defaults to :attr:`request_timeout`.

        Returns:
            The ``result`` member of the matching response.

        Raises:
            JsonRpcError: The server answered with an error.
            RequestTimeoutError: No response arrived in time.
            DeliveryError: The POST was rejected. The call then stays pending
                until its timer fires.
            ClientDisposedError: The client was closed first.
        """
        request_id = f"{method}_{self._id_factory()}"
        payload = types.JSONRPCRequest(
            jsonrpc="2.0",
            id=request_id,
            method=method,
            params=dict(params or {}),
        ).model_dump(by_alias=True, mode="json")
        return await self._send_request(request_id, method, payload, timeout)

    async def _send_request(
        self,
        request_id: str,
        method: str,
        payload: dict[str, Any],
        timeout: float | None,
    ) -> Any:
        self._ensure_open()
        if request_id in self._pending:
            raise DuplicateRequestIdError(f"Request id {request_id} is already outstanding")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timeout = self.request_timeout if timeout is None else timeout
        timer = loop.call_later(timeout, self._expire_call, request_id, timeout)
        self._pending[request_id] = OutstandingCall(request_id, future, timer, method)
        self._observer.on_call_sent(request_id, method)

        try:
            await self._transport.post_json(payload)
        except asyncio.CancelledError:
            self._discard_call(request_id)
            raise
        except Exception:
            # Left registered: only a late response, the timer or aclose() settles it.
            future.add_done_callback(_consume_result)
            raise

        try:
            return await future
        except asyncio.CancelledError:
            self._discard_call(request_id)
            raise

    def _expire_call(self, request_id: str, timeout: float) -> None:
        call = self._pending.pop(request_id, None)
        if call is None or call.future.done():
            return
        self._observer.on_call_timed_out(request_id, call.method)
        call.future.set_exception(RequestTimeoutError(request_id, timeout))

    def _discard_call(self, request_id: str) -> None:
        call = self._pending.pop(request_id, None)
        if call is not None:
            call.timer.cancel()

    async def _read_events(self, events: AsyncIterator[SseEvent]) -> None:
        try:
            async for event in events:
                try:
                    await self._handle_event(event)
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to handle SSE event %s", event.event or "<default>")
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("SSE stream error: %s", self.sse_url)
        else:
            logger.info("SSE stream closed: %s", self.sse_url)

    async def _handle_event(self, event: SseEvent) -> None:
        logger.debug("SSE event: %s id=%s", event.event or "<default>", event.id or "-")
        outcome = classify_event(event)

        if isinstance(outcome, EndpointAnnounced):
            try:
                self._transport.set_messages_endpoint_from_event(outcome.endpoint)
            except httpx.InvalidURL as exc:
                self._observer.on_event_discarded(Unparseable(data=event.data, reason=f"invalid endpoint: {exc}"))
                return
            if self._session_id is None:
                self._session_id = self._transport.session_id
        elif isinstance(outcome, SessionAnnounced):
            self._set_session_id(outcome.session_id)
        elif isinstance(outcome, MessagesReceived):
            if outcome.discarded:
                logger.debug("Ignored %d unparseable line(s) in SSE event", outcome.discarded)
            for message in outcome.messages:
                await self._handle_message(message)
        else:
            self._observer.on_event_discarded(outcome)

    async def _handle_message(self, message: dict[str, Any]) -> None:
        if "id" in message:
            self._resolve_call(message)
            return

        method = message.get("method")
        if isinstance(method, str):
            await self._handle_notification(method, message.get("params"))

    def _resolve_call(self, message: dict[str, Any]) -> None:
        raw_id = message["id"]
        call = self._pending.pop(str(raw_id), None) if raw_id is not None else None
        if call is None:
            logger.debug("Discarding response for unknown id %s", raw_id)
            return

        call.timer.cancel()
        if call.future.done():
            return

        error = message.get("error")
        if error is not None:
            exc = JsonRpcError.from_payload(error)
            call.future.set_exception(exc)
            self._observer.on_call_failed(call.request_id, call.method, exc)
        else:
            call.future.set_result(message.get("result"))
            self._observer.on_call_resolved(call.request_id, call.method)

    async def _handle_notification(self, method: str, params: Any) -> None:
        logger.debug("<- notification %s", method)
        if self._notification_handler is None:
            return
        try:
            result = self._notification_handler(method, params)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("Notification handler failed for %s", method)

    async def aclose(self) -> None:
        """Fail all outstanding calls and release the transport. Idempotent."""
        if self._state is ClientState.DISPOSED:
            return
        self._set_state(ClientState.DISPOSED)

        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            call.timer.cancel()
            if not call.future.done():
                error = ClientDisposedError("Client disposed")
                call.future.set_exception(error)
                self._observer.on_call_failed(call.request_id, call.method, error)

        task = self._reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._transport.aclose()
