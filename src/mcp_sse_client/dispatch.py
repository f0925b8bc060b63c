"""Classification of inbound stream events.

:func:`classify_event` is total: every event maps to exactly one outcome and
nothing is raised. Deciding what to do with an outcome (apply it, log it,
ignore it) is left to the caller.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from .sse_transport import SseEvent

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_SESSION_ID_PATTERN = re.compile(r'session[_-]?id\s*[:=]\s*"?([A-Za-z0-9_.:\-]+)"?', re.IGNORECASE)


@dataclass(frozen=True)
class EndpointAnnounced:
    """The server announced where outbound messages must be posted."""

    endpoint: str


@dataclass(frozen=True)
class SessionAnnounced:
    """The server announced the session identifier."""

    session_id: str


@dataclass(frozen=True)
class MessagesReceived:
    """One or more JSON-RPC messages; ``discarded`` counts unusable lines."""

    messages: tuple[dict[str, Any], ...]
    discarded: int = 0


@dataclass(frozen=True)
class Unparseable:
    """Nothing usable could be extracted from the event."""

    data: str
    reason: str


EventOutcome = EndpointAnnounced | SessionAnnounced | MessagesReceived | Unparseable


def extract_session_id(data: str) -> str | None:
    """Find a session id in a ``session`` event body, either JSON or ``key=value`` text."""
    try:
        decoded = json.loads(data)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict):
        for key in ("session_id", "sessionId"):
            value = decoded.get(key)
            if isinstance(value, str) and value:
                return value

    match = _SESSION_ID_PATTERN.search(data)
    if match:
        return match.group(1)
    return None


def parse_messages(data: str) -> MessagesReceived:
    """Parse newline-separated JSON documents, keeping only JSON objects."""
    messages: list[dict[str, Any]] = []
    discarded = 0
    for line in _LINE_BREAK.split(data):
        line = line.strip()
        if not line:
            continue
        try:
            decoded = json.loads(line)
        except ValueError:
            discarded += 1
            continue
        if isinstance(decoded, dict):
            messages.append(decoded)
        else:
            discarded += 1
    return MessagesReceived(messages=tuple(messages), discarded=discarded)


def classify_event(event: SseEvent) -> EventOutcome:
    """Map a stream event onto one of the closed set of outcomes."""
    event_type = (event.event or "").lower()

    if event_type == "endpoint":
        return EndpointAnnounced(endpoint=event.data.strip())

    if event_type == "session":
        session_id = extract_session_id(event.data)
        if session_id is None:
            return Unparseable(data=event.data, reason="no session id in session event")
        return SessionAnnounced(session_id=session_id)

    received = parse_messages(event.data)
    if not received.messages:
        return Unparseable(data=event.data, reason="no JSON-RPC message in event data")
    return received
