"""Simple in-process event broadcaster for Server-Sent Events (SSE).

Usage:
  from .events import broadcast, EventType
  await broadcast({"type": EventType.STATS, "data": processor.get_status()})

The dashboard connects to /stream and receives JSON lines formatted as SSE:
  event: message\n
  data: { ... json ... }\n\n
No persistence: with no listeners an event is dropped.
"""
from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    STATS = "stats"  # quota / protection snapshot (same shape as /api/status)
    BATCH_PROGRESS = "batch_progress"  # one item finished
    BATCH_COMPLETE = "batch_complete"  # batch completed, paused or failed
    PROTECTION = "protection"  # circuit breaker tripped
    CONNECTION = "connection"  # messaging client connectivity changed

    def __str__(self) -> str:
        return self.value


_listeners: List[asyncio.Queue[Dict[str, Any]]] = []
_lock = asyncio.Lock()
_pending: Set[asyncio.Task] = set()


async def register_listener() -> asyncio.Queue[Dict[str, Any]]:
    q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=100)
    async with _lock:
        _listeners.append(q)
    return q


async def unregister_listener(q: asyncio.Queue[Dict[str, Any]]):
    async with _lock:
        try:
            _listeners.remove(q)
        except ValueError:
            pass


def listener_count() -> int:
    return len(_listeners)


async def broadcast(payload: Dict[str, Any]):
    # Push to all queues; a listener whose queue is full is dropped
    dead: List[asyncio.Queue[Dict[str, Any]]] = []
    for q in list(_listeners):
        try:
            q.put_nowait(payload)
        except asyncio.QueueFull:
            dead.append(q)
    if dead:
        async with _lock:
            for dq in dead:
                if dq in _listeners:
                    _listeners.remove(dq)


async def publish_processor_event(event: str, payload: Dict[str, Any]) -> None:
    """Event sink handed to the batch processor."""
    await broadcast({"type": str(EventType(event)), "data": payload})


def publish_connection_change(state: Any, reason: Optional[str]) -> None:
    """ConnectionMonitor listener; schedules the broadcast on the running loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("connection_event_no_loop", state=str(state))
        return
    task = loop.create_task(
        broadcast({"type": str(EventType.CONNECTION), "data": {"state": str(state), "reason": reason}})
    )
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def sse_event_iter() -> AsyncIterator[bytes]:
    q = await register_listener()
    try:
        while True:
            item = await q.get()
            data = json.dumps(item, ensure_ascii=False, default=str)
            yield f"event: message\ndata: {data}\n\n".encode("utf-8")
    except asyncio.CancelledError:  # graceful disconnect
        pass
    finally:
        await unregister_listener(q)
