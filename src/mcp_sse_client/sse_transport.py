"""Event stream transport for MCP over SSE.

The transport owns one GET stream of server-sent events and the POST channel
used to deliver outbound JSON-RPC messages. The submission endpoint is not
known up front: servers announce it with an ``endpoint`` event, usually as a
path carrying a ``session_id`` query parameter.
"""

import codecs
import json
import logging
import re
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any

import httpx
from httpx_sse import EventSource, SSEError, aconnect_sse

from .errors import DeliveryError, DeliveryTransportError, SseConnectionError
from .httpx_client import custom_httpx_client

logger = logging.getLogger(__name__)

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_TRAILING_SSE = re.compile(r"/sse/?$")

# The stream stays open indefinitely, so only connecting is bounded.
SSE_STREAM_TIMEOUT = httpx.Timeout(30.0, read=None)


@dataclass(frozen=True)
class SseEvent:
    """One reassembled server-sent event."""

    event: str | None = None
    id: str | None = None
    data: str = ""


class SseLineDecoder:
    """Reassemble server-sent events from arbitrarily chunked text.

    Lines are accumulated until a blank line, which emits the buffered event.
    ``data:`` values are trimmed and joined with ``\\n``. Comment lines and
    unknown fields are ignored. There is no implicit flush at end of stream.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None
        self._pending = ""

    def feed(self, text: str) -> list[SseEvent]:
        """Consume a chunk of text and return the events it completed."""
        buffer = self._pending + text
        events: list[SseEvent] = []
        pos = 0
        for match in _LINE_BREAK.finditer(buffer):
            # A lone trailing CR may be the first half of a CRLF split across chunks.
            if match.group() == "\r" and match.end() == len(buffer):
                break
            event = self.decode_line(buffer[pos : match.start()])
            pos = match.end()
            if event is not None:
                events.append(event)
        self._pending = buffer[pos:]
        return events

    def decode_line(self, line: str) -> SseEvent | None:
        """Apply a single line (without its terminator) to the decoder state."""
        if not line:
            return self._flush()
        if line.startswith("event:"):
            self._event = line[6:].strip()
        elif line.startswith("id:"):
            self._id = line[3:].strip()
        elif line.startswith("data:"):
            self._data.append(line[5:].strip())
        return None

    def _flush(self) -> SseEvent | None:
        if not self._data:
            return None
        event = SseEvent(event=self._event, id=self._id, data="\n".join(self._data))
        self._data.clear()
        self._event = None
        self._id = None
        return event


class SseTransport:
    """One logical connection to an MCP SSE endpoint."""

    def __init__(
        self,
        sse_url: str,
        headers: dict[str, str] | None = None,
        *,
        httpx_client_factory: Callable[..., httpx.AsyncClient] = custom_httpx_client,
    ) -> None:
        """Initialize the transport.

        Args:
            sse_url: URL of the event stream, e.g. ``https://host/sse``.
            headers: Extra headers sent with the stream request and every POST.
            httpx_client_factory: Factory for the underlying ``httpx.AsyncClient``.
        """
        self.sse_url = sse_url
        self.headers = dict(headers or {})
        self.session_id: str | None = None
        self.messages_url: httpx.URL | None = None
        self.mode: str | None = None
        self._client = httpx_client_factory(headers=self.headers)
        self._stream_stack = AsyncExitStack()
        self._connected = False
        self._closed = False

    @property
    def base_url(self) -> str:
        """The connection URL with a trailing ``/sse`` path segment removed."""
        return _TRAILING_SSE.sub("", self.sse_url, count=1)

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def connect(self) -> AsyncIterator[SseEvent]:
        """Open the event stream and return the (single-use) sequence of events.

        The ``httpx-sse`` decoder is tried first. If that attempt fails for any
        reason the stream is re-opened and decoded line by line. The choice is
        made before the first event is produced and never changes afterwards.

        Raises:
            SseConnectionError: If neither mode could open the stream.
        """
        if self._closed:
            raise SseConnectionError("Transport is closed")
        if self._connected:
            raise SseConnectionError("Transport is already connected")
        self._connected = True

        try:
            source = await self._open_structured()
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "Structured SSE decode unavailable for %s (%s); falling back to line reader",
                self.sse_url,
                exc,
            )
        else:
            self.mode = "structured"
            return self._iter_structured(source)

        response = await self._open_line_stream()
        self.mode = "line"
        return self._iter_lines(response)

    async def _open_structured(self) -> EventSource:
        stack = AsyncExitStack()
        try:
            source = await stack.enter_async_context(
                aconnect_sse(
                    self._client,
                    "GET",
                    self.sse_url,
                    headers=dict(self.headers),
                    timeout=SSE_STREAM_TIMEOUT,
                ),
            )
            source.response.raise_for_status()
            content_type = source.response.headers.get("content-type", "")
            if "text/event-stream" not in content_type:
                raise SSEError(f"Expected response header Content-Type to contain 'text/event-stream', got {content_type!r}")
        except BaseException:
            await stack.aclose()
            raise
        self._stream_stack.push_async_callback(stack.aclose)
        return source

    async def _open_line_stream(self) -> httpx.Response:
        request = self._client.build_request(
            "GET",
            self.sse_url,
            headers={"Accept": "text/event-stream", **self.headers},
            timeout=SSE_STREAM_TIMEOUT,
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise SseConnectionError(f"Could not open event stream {self.sse_url}: {exc}") from exc
        if response.status_code >= 400:
            await response.aclose()
            raise SseConnectionError(
                f"Event stream {self.sse_url} returned HTTP {response.status_code}",
            )
        self._stream_stack.push_async_callback(response.aclose)
        return response

    async def _iter_structured(self, source: EventSource) -> AsyncIterator[SseEvent]:
        async for sse in source.aiter_sse():
            yield SseEvent(event=sse.event, id=sse.id or None, data=sse.data)

    async def _iter_lines(self, response: httpx.Response) -> AsyncIterator[SseEvent]:
        decoder = SseLineDecoder()
        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in response.aiter_bytes():
            for event in decoder.feed(text_decoder.decode(chunk)):
                yield event
        for event in decoder.feed(text_decoder.decode(b"", final=True)):
            yield event

    def set_messages_endpoint_from_event(self, endpoint: str) -> httpx.URL:
        """Resolve the submission endpoint announced by an ``endpoint`` event.

        Absolute ``http(s)`` URLs are used verbatim; anything else is appended
        to :attr:`base_url`. A ``session_id`` query parameter on the result is
        adopted as the session id. Only the first announcement per connection
        is honoured.
        """
        if self.messages_url is not None:
            logger.warning(
                "Ignoring repeated endpoint event %r; keeping %s",
                endpoint,
                self.messages_url,
            )
            return self.messages_url

        trimmed = endpoint.strip()
        if trimmed.startswith(("http://", "https://")):
            url = httpx.URL(trimmed)
        else:
            path = trimmed if trimmed.startswith("/") else f"/{trimmed}"
            url = httpx.URL(self.base_url + path)
        self.messages_url = url

        session_id = url.params.get("session_id")
        if session_id:
            self.session_id = session_id
        logger.debug("Messages endpoint resolved to %s (session=%s)", url, self.session_id)
        return url

    async def post_json(self, payload: dict[str, Any]) -> None:
        """Deliver a JSON-RPC message to the submission endpoint.

        Returns once the server accepted the POST. The RPC result, if any,
        arrives later on the event stream.

        Raises:
            DeliveryError: If the endpoint answered with an HTTP error status.
            DeliveryTransportError: If no response arrived at all.
        """
        if self._closed:
            raise SseConnectionError("Transport is closed")

        url = self.messages_url or httpx.URL(f"{self.base_url}/messages/")
        if "session_id" not in url.params and self.session_id is not None:
            url = url.copy_add_param("session_id", self.session_id)

        body = {**payload, "session_id": self.session_id}
        try:
            response = await self._client.post(
                url,
                content=json.dumps(body),
                headers={"Content-Type": "application/json", **self.headers},
            )
        except httpx.HTTPError as exc:
            raise DeliveryTransportError(str(url), exc) from exc
        if response.status_code >= 400:
            raise DeliveryError(response.status_code, response.text, str(url))

    async def aclose(self) -> None:
        """Close the event stream and the HTTP client. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._stream_stack.aclose()
        finally:
            await self._client.aclose()
