from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from deepresearch.models.events import EventType, SSEEvent
from deepresearch.models.session import ResearchSession


def status_changed(session: ResearchSession) -> SSEEvent:
    data: dict[str, Any] = {
        "sessionId": session.id,
        "status": session.status.value,
        "updatedAt": session.updated_at.isoformat(),
    }
    if session.error:
        data["error"] = session.error
    return SSEEvent(event=EventType.STATUS, data=data)


def error(message: str, session_id: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if session_id:
        data["sessionId"] = session_id
    return SSEEvent(event=EventType.ERROR, data=data)


async def watch_session(
    load: Callable[[], Awaitable[Optional[ResearchSession]]],
    *,
    interval_seconds: float,
) -> AsyncGenerator[SSEEvent, None]:
    """Poll a session and yield an event for every observed status change.

    Stops after a terminal status, or with an error event if the session
    disappears.
    """
    last_status = None
    while True:
        session = await load()
        if session is None:
            yield error("Research session not found")
            return
        if session.status != last_status:
            last_status = session.status
            yield status_changed(session)
        if session.status.is_terminal:
            return
        await asyncio.sleep(interval_seconds)
