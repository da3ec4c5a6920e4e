"""Messaging client interface and connectivity observer.

The engine never talks to the messaging service directly. Anything that
implements ``MessagingClient`` can be plugged in (see ``MESSAGING_CLIENT``);
the client reports connectivity through a ``ConnectionMonitor`` the engine
consults at admission.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ContactInfo:
    jid: str
    name: Optional[str] = None


@dataclass
class GroupInfo:
    group_id: str
    is_group: bool
    name: Optional[str] = None
    participants: List[str] = field(default_factory=list)


@runtime_checkable
class MessagingClient(Protocol):
    async def is_registered(self, jid: str) -> bool: ...

    async def fetch_contact(self, jid: str) -> ContactInfo: ...

    async def add_participant(self, group_id: str, jid: str) -> None: ...

    async def fetch_participants(self, group_id: str) -> List[str]: ...

    async def lookup_group(self, group_id: str) -> GroupInfo: ...

    async def accept_invite(self, code: str) -> Optional[str]: ...

    async def send_message(self, group_id: str, text: str) -> None: ...


# =============================================================================
# CONNECTION MONITOR
# =============================================================================

class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    def __str__(self) -> str:
        return self.value


Listener = Callable[[ConnectionState, Optional[str]], None]


class ConnectionMonitor:
    """Tracks whether the messaging client can currently serve requests."""

    def __init__(self, state: ConnectionState = ConnectionState.CONNECTING):
        self.state = state
        self.reason: Optional[str] = None
        self.changed_at = datetime.now()
        self._listeners: List[Listener] = []

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set(self, state: ConnectionState, reason: Optional[str]) -> None:
        if state is self.state and reason == self.reason:
            return
        self.state = state
        self.reason = reason
        self.changed_at = datetime.now()
        logger.info("messaging_client_state", state=str(state), reason=reason)
        for listener in list(self._listeners):
            listener(state, reason)

    def mark_connecting(self) -> None:
        self._set(ConnectionState.CONNECTING, None)

    def mark_connected(self) -> None:
        self._set(ConnectionState.CONNECTED, None)

    def mark_disconnected(self, reason: Optional[str] = None) -> None:
        self._set(ConnectionState.DISCONNECTED, reason)


__all__ = [
    "ContactInfo",
    "GroupInfo",
    "MessagingClient",
    "ConnectionState",
    "ConnectionMonitor",
]
