"""Observability hooks for the protocol client.

The client reports what it does through a :class:`ClientObserver`. The
default :class:`LoggingObserver` forwards everything to :mod:`logging`;
applications can subclass either to collect metrics or drive a UI.
"""

import logging
import typing as t

if t.TYPE_CHECKING:
    from .client import ClientState
    from .dispatch import EventOutcome

logger = logging.getLogger("mcp_sse_client.client")


class ClientObserver:
    """No-op base class; override the hooks you care about."""

    def on_state_change(self, old: "ClientState", new: "ClientState") -> None:
        pass

    def on_call_sent(self, request_id: str, method: str) -> None:
        pass

    def on_call_resolved(self, request_id: str, method: str | None) -> None:
        pass

    def on_call_failed(self, request_id: str, method: str | None, error: BaseException) -> None:
        pass

    def on_call_timed_out(self, request_id: str, method: str | None) -> None:
        pass

    def on_event_discarded(self, outcome: "EventOutcome") -> None:
        pass


class LoggingObserver(ClientObserver):
    """Report client activity through the ``mcp_sse_client.client`` logger."""

    def on_state_change(self, old: "ClientState", new: "ClientState") -> None:
        logger.info("Client state %s -> %s", old.value, new.value)

    def on_call_sent(self, request_id: str, method: str) -> None:
        logger.debug("-> request %s id %s", method, request_id)

    def on_call_resolved(self, request_id: str, method: str | None) -> None:
        logger.debug("<- result %s id %s", method or "unknown", request_id)

    def on_call_failed(self, request_id: str, method: str | None, error: BaseException) -> None:
        logger.warning("<- error %s id %s: %s", method or "unknown", request_id, error)

    def on_call_timed_out(self, request_id: str, method: str | None) -> None:
        logger.warning("Request %s id %s timed out", method or "unknown", request_id)

    def on_event_discarded(self, outcome: "EventOutcome") -> None:
        logger.debug("Discarded stream event: %s", outcome)
