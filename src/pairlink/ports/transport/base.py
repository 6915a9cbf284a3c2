"""
Base class for peer transports.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from ...contracts.v1 import PeerRole
from ...kernel.events import EventChannel, SessionEventKind


ReplyCallback = Callable[[Dict[str, Any]], None]
ErrorCallback = Callable[[str], None]


class TransportError(RuntimeError):
    """A channel refused or failed an operation (never crosses the session boundary)."""


class PeerTransport(ABC):
    """
    Abstract base class for peer transports.

    A transport owns the platform session handle and reports everything it
    learns through the bound EventChannel:
    - ActivationComplete(state, peer_installed, reachable, error)
    - ReachabilityChanged(reachable, peer_installed?)
    - MessageReceived(payload, channel, reply?)
    - Deactivated()

    Two delivery channels:
    - live: request/response, usable only while the peer is reachable
    - queued: durable, at-least-once, fire-and-forget, no reply
    """

    transport_name: str = "unknown"

    def __init__(self, role: PeerRole) -> None:
        self.role = role
        self._events: Optional[EventChannel] = None

    def bind(self, events: EventChannel) -> None:
        self._events = events

    @property
    def events(self) -> EventChannel:
        if self._events is None:
            raise TransportError(f"{self.transport_name} transport is not bound to an event channel")
        return self._events

    def is_supported(self) -> bool:
        return True

    @abstractmethod
    def activate(self) -> None:
        """Request activation; the result arrives as an ActivationComplete event."""

    @abstractmethod
    def teardown(self) -> None:
        """Drop the current session handle without emitting events."""

    @abstractmethod
    def send_live(self, payload: Dict[str, Any], *, on_reply: ReplyCallback, on_error: ErrorCallback) -> None:
        """
        Send on the live channel. Exactly one of on_reply/on_error is invoked
        later on the owner loop; a transport timeout counts as an error.
        """

    @abstractmethod
    def enqueue(self, payload: Dict[str, Any]) -> None:
        """
        Hand a payload to the queued channel.
        Raises TransportError if the channel refuses it.
        """

    def close(self) -> None:
        self.teardown()

    # Helpers for subclasses

    def _emit(self, kind: SessionEventKind, **data: Any) -> None:
        if self._events is None:
            return
        self._events.publish(kind, **data)

    def _marshal(self, fn: Callable[..., Any], *args: Any) -> None:
        self.events.post(fn, *args)
