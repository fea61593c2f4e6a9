from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .types import (
    TASK_CANCELLED,
    TOOL_ERROR,
    Notification,
    PendingTask,
    SettleCallback,
    Settlement,
    SettlementKind,
)

logger = logging.getLogger(__name__)

PassthroughHandler = Callable[[Notification], None]


class DuplicateTaskError(ValueError):
    pass


class TaskCorrelator:
    """Pending-task table keyed by task id.

    Every entry leaves the table exactly once: through ``notify``, its timeout,
    or ``cancel``. Whichever path pops the entry first settles it; the others
    find nothing and return False.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingTask] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending.keys())

    def track(self, task_id: str, on_settle: SettleCallback, timeout_ms: int | None) -> PendingTask:
        if not task_id:
            raise ValueError("task_id cannot be empty")
        if task_id in self._pending:
            raise DuplicateTaskError(f"Task {task_id} is already tracked")

        loop = asyncio.get_running_loop()
        now = loop.time()
        entry = PendingTask(task_id=task_id, on_settle=on_settle, started_at=now)
        if timeout_ms is not None and timeout_ms > 0:
            entry.timeout_ms = int(timeout_ms)
            entry.deadline = now + timeout_ms / 1000.0
            entry.timer = loop.call_later(timeout_ms / 1000.0, self._expire, task_id)
        self._pending[task_id] = entry
        logger.debug("Tracking task_id=%s timeout_ms=%s", task_id, timeout_ms)
        return entry

    def wait(self, task_id: str, timeout_ms: int | None) -> asyncio.Future[Settlement]:
        future: asyncio.Future[Settlement] = asyncio.get_running_loop().create_future()

        def _resolve(settlement: Settlement) -> None:
            if not future.done():
                future.set_result(settlement)

        self.track(task_id, _resolve, timeout_ms)
        return future

    def notify(self, task_id: str | None, event: str, payload: dict[str, Any] | None = None) -> bool:
        if not task_id:
            return False
        entry = self._pending.pop(task_id, None)
        if entry is None:
            logger.debug("Dropping %s for unknown or settled task_id=%s", event, task_id)
            return False

        body = payload or {}
        if event == TOOL_ERROR:
            message = body.get("error") or body.get("message") or f"Task {task_id} failed"
            if not isinstance(message, str):
                message = str(message)
            self._settle(entry, SettlementKind.FAILURE, payload=body, message=message)
        elif event == TASK_CANCELLED:
            self._settle(entry, SettlementKind.CANCELLED, payload=body, message=f"Task {task_id} cancelled")
        else:
            self._settle(entry, SettlementKind.SUCCESS, payload=body)
        return True

    def cancel(self, task_id: str | None, reason: str | None = None) -> bool:
        if not task_id:
            return False
        entry = self._pending.pop(task_id, None)
        if entry is None:
            return False
        self._settle(entry, SettlementKind.CANCELLED, message=reason or f"Task {task_id} cancelled")
        return True

    def cancel_all(self, reason: str = "shutdown") -> int:
        cancelled = 0
        for task_id in list(self._pending.keys()):
            if self.cancel(task_id, reason):
                cancelled += 1
        return cancelled

    def _expire(self, task_id: str) -> None:
        entry = self._pending.pop(task_id, None)
        if entry is None:
            return
        elapsed_ms = self._elapsed_ms(entry)
        logger.warning(
            "Task timed out task_id=%s timeout_ms=%s elapsed_ms=%s",
            task_id,
            entry.timeout_ms,
            elapsed_ms,
        )
        self._settle(
            entry,
            SettlementKind.TIMEOUT,
            message=f"Task {task_id} timed out after {elapsed_ms}ms",
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _elapsed_ms(entry: PendingTask) -> int:
        return max(0, int((asyncio.get_running_loop().time() - entry.started_at) * 1000))

    def _settle(
        self,
        entry: PendingTask,
        kind: SettlementKind,
        *,
        payload: dict[str, Any] | None = None,
        message: str | None = None,
        elapsed_ms: int | None = None,
    ) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        settlement = Settlement(
            kind=kind,
            task_id=entry.task_id,
            payload=payload or {},
            message=message,
            elapsed_ms=self._elapsed_ms(entry) if elapsed_ms is None else elapsed_ms,
        )
        try:
            entry.on_settle(settlement)
        except Exception:
            logger.exception("Settlement callback failed task_id=%s kind=%s", entry.task_id, kind.value)

    async def consume(
        self,
        channel: asyncio.Queue[Notification],
        passthrough: PassthroughHandler | None = None,
    ) -> None:
        while True:
            notification = await channel.get()
            try:
                if notification.is_terminal:
                    self.notify(notification.task_id, notification.event, notification.payload)
                elif passthrough is not None:
                    passthrough(notification)
            except Exception:
                logger.exception(
                    "Failed handling notification event=%s task_id=%s",
                    notification.event,
                    notification.task_id,
                )
            finally:
                channel.task_done()
