from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import Any

from .types import EmitFn
from .utils import utc_now_iso

RUN_STARTED = "runStarted"
RUN_LOG_APPEND = "runLogAppend"
RUN_PROGRESS = "runProgress"
RUN_FINISHED = "runFinished"


class RunEventLog:
    """Append-only lifecycle event log read by the UI boundary.

    Keeps the newest ``max_events`` entries; ids are monotonically increasing
    so readers resume with ``after_id``.
    """

    def __init__(self, max_events: int = 5000) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max(1, max_events))
        self._ids = itertools.count(1)
        self._changed: asyncio.Event | None = None

    def add_event(self, event_type: str, *, run_id: str | None = None, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        event = {
            "id": next(self._ids),
            "type": event_type,
            "run_id": run_id,
            "ts": utc_now_iso(),
            "payload": payload or {},
        }
        self._events.append(event)
        if self._changed is not None:
            self._changed.set()
        return event

    def list_events(self, *, after_id: int = 0, run_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        selected: list[dict[str, Any]] = []
        for event in self._events:
            if event["id"] <= after_id:
                continue
            if run_id and event["run_id"] != run_id:
                continue
            selected.append(event)
            if len(selected) >= limit:
                break
        return selected

    def last_id(self) -> int:
        return self._events[-1]["id"] if self._events else 0

    async def wait_for_events(self, timeout: float) -> bool:
        if self._changed is None:
            self._changed = asyncio.Event()
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._changed.clear()
        return True

    def emitter(self) -> EmitFn:
        def _emit(event_type: str, payload: dict[str, Any]) -> None:
            self.add_event(event_type, run_id=payload.get("runId"), payload=payload)

        return _emit
