"""In-process messaging client used in MOCK_MODE and throughout the tests.

Every call succeeds by default. Failures are scripted per identifier: a single
exception is raised on every call, a list is consumed one entry per call and
then the call succeeds.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .client import ContactInfo, GroupInfo
from .errors import TransientProviderError

ErrorScript = Union[BaseException, Sequence[BaseException]]

DEFAULT_INVITE_GROUP = "120363000000000000@g.us"


class MockMessagingClient:
    def __init__(
        self,
        *,
        unregistered: Iterable[str] = (),
        add_errors: Optional[Dict[str, ErrorScript]] = None,
        registration_errors: Optional[Dict[str, ErrorScript]] = None,
        contact_errors: Optional[Dict[str, ErrorScript]] = None,
        participants_error: Optional[BaseException] = None,
        groups: Optional[Dict[str, GroupInfo]] = None,
        lookup_error: Optional[BaseException] = None,
        invites: Optional[Dict[str, Optional[str]]] = None,
        send_error: Optional[BaseException] = None,
        latency: float = 0.0,
    ):
        self.unregistered = set(unregistered)
        self.add_errors = self._scripts(add_errors)
        self.registration_errors = self._scripts(registration_errors)
        self.contact_errors = self._scripts(contact_errors)
        self.participants_error = participants_error
        self.groups = dict(groups or {})
        self.lookup_error = lookup_error
        self.invites = dict(invites or {})
        self.send_error = send_error
        self.latency = latency

        self.calls: List[Tuple[str, ...]] = []
        self.added: Dict[str, List[str]] = defaultdict(list)
        self.sent_messages: List[Tuple[str, str]] = []

    @staticmethod
    def _scripts(raw: Optional[Dict[str, ErrorScript]]) -> Dict[str, Union[BaseException, List[BaseException]]]:
        out: Dict[str, Union[BaseException, List[BaseException]]] = {}
        for key, script in (raw or {}).items():
            out[key] = script if isinstance(script, BaseException) else list(script)
        return out

    @staticmethod
    def _raise_scripted(scripts: Dict[str, Union[BaseException, List[BaseException]]], key: str) -> None:
        script = scripts.get(key)
        if script is None:
            return
        if isinstance(script, BaseException):
            raise script
        if script:
            raise script.pop(0)

    async def _tick(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    async def is_registered(self, jid: str) -> bool:
        self.calls.append(("is_registered", jid))
        await self._tick()
        self._raise_scripted(self.registration_errors, jid)
        return jid not in self.unregistered

    async def fetch_contact(self, jid: str) -> ContactInfo:
        self.calls.append(("fetch_contact", jid))
        await self._tick()
        self._raise_scripted(self.contact_errors, jid)
        return ContactInfo(jid=jid, name=f"Contact {jid[-9:-5]}")

    async def add_participant(self, group_id: str, jid: str) -> None:
        self.calls.append(("add_participant", group_id, jid))
        await self._tick()
        self._raise_scripted(self.add_errors, jid)
        self.added[group_id].append(jid)

    async def fetch_participants(self, group_id: str) -> List[str]:
        self.calls.append(("fetch_participants", group_id))
        await self._tick()
        if self.participants_error is not None:
            raise self.participants_error
        return list(self.added.get(group_id, []))

    async def lookup_group(self, group_id: str) -> GroupInfo:
        self.calls.append(("lookup_group", group_id))
        await self._tick()
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.groups.get(group_id) or GroupInfo(group_id=group_id, is_group=True)

    async def accept_invite(self, code: str) -> Optional[str]:
        self.calls.append(("accept_invite", code))
        await self._tick()
        if code in self.invites:
            return self.invites[code]
        return DEFAULT_INVITE_GROUP

    async def send_message(self, group_id: str, text: str) -> None:
        self.calls.append(("send_message", group_id))
        await self._tick()
        if self.send_error is not None:
            raise self.send_error
        self.sent_messages.append((group_id, text))

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


def flaky(times: int, message: str = "Protocol error: timeout") -> List[BaseException]:
    """Script ``times`` transient failures for one identifier."""
    return [TransientProviderError(message) for _ in range(times)]


__all__ = ["MockMessagingClient", "flaky", "DEFAULT_INVITE_GROUP"]
