from __future__ import annotations

import asyncio
import logging

from .config import Settings
from .correlator import DuplicateTaskError, TaskCorrelator
from .events import RUN_PROGRESS, RunEventLog
from .notifications import parse_notification
from .session import RunSession, RunStateError
from .transport import Transport
from .types import LOG, LOG_PATH, PROGRESS, Notification
from .utils import make_id

logger = logging.getLogger(__name__)


class RunOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        transport: Transport | None,
        events: RunEventLog,
        correlator: TaskCorrelator | None = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.events = events
        self.correlator = correlator or TaskCorrelator()
        self._sessions: dict[str, RunSession] = {}
        self._run_by_task: dict[str, str] = {}
        self._active_order: list[str] = []
        self._inbox: asyncio.Queue[Notification] | None = None
        self._consumer: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._inbox = asyncio.Queue()
        self._consumer = asyncio.create_task(self.correlator.consume(self._inbox, self.route_passthrough))
        logger.info("Notification consumer started")

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        cancelled = self.correlator.cancel_all("Service shutting down")
        if cancelled:
            logger.warning("Cancelled %s pending task(s) on shutdown", cancelled)

    async def drain(self) -> None:
        if self._inbox is not None:
            await self._inbox.join()

    def get(self, run_id: str) -> RunSession | None:
        return self._sessions.get(run_id)

    def list_sessions(self) -> list[RunSession]:
        return list(self._sessions.values())

    async def submit(
        self,
        code: str,
        *,
        run_id: str | None = None,
        task_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> RunSession:
        if task_id and task_id in self.correlator:
            raise DuplicateTaskError(f"Task {task_id} is already tracked")

        session = self._sessions.get(run_id) if run_id else None
        created = session is None
        if session is not None:
            if session.state.is_active:
                raise RunStateError(f"Run {run_id} is already {session.state.value}")
            self._forget_task(session)
            session.recycle()
        else:
            session = RunSession.from_settings(
                self.settings,
                run_id=run_id or make_id("run"),
                correlator=self.correlator,
                emit=self.events.emitter(),
                transport=self.transport,
            )
            self._sessions[session.run_id] = session

        effective_timeout = timeout_ms if timeout_ms is not None else self.settings.default_timeout_ms
        allocated = task_id or make_id("task")
        self._run_by_task[allocated] = session.run_id
        self._drop_active(session.run_id)
        self._active_order.append(session.run_id)
        try:
            await session.submit(code, timeout_ms=effective_timeout, task_id=allocated)
        except Exception:
            self._run_by_task.pop(allocated, None)
            self._drop_active(session.run_id)
            if created:
                self._sessions.pop(session.run_id, None)
            raise
        return session

    async def cancel(self, run_id: str) -> RunSession | None:
        session = self._sessions.get(run_id)
        if session is None:
            return None
        await session.cancel()
        return session

    def release(self, run_id: str) -> RunSession | None:
        session = self._sessions.get(run_id)
        if session is None:
            return None
        if session.state.is_active:
            raise RunStateError(f"Run {run_id} is still {session.state.value}")
        self._forget_task(session)
        self._drop_active(run_id)
        return self._sessions.pop(run_id)

    def post_notification(self, raw: str | None) -> bool:
        notification = parse_notification(raw)
        if notification is None:
            return False
        if self._inbox is None:
            raise RuntimeError("Notification consumer is not running")
        self._inbox.put_nowait(notification)
        return True

    def route_passthrough(self, notification: Notification) -> None:
        session = self._session_for(notification.task_id)
        if session is None:
            logger.debug("No run for notification event=%s task_id=%s", notification.event, notification.task_id)
            return

        if notification.event == LOG:
            session.apply_log_chunk(notification.text)
        elif notification.event == LOG_PATH:
            session.set_log_path(notification.text)
        elif notification.event == PROGRESS and session.state.is_active:
            payload = notification.payload
            self.events.add_event(
                RUN_PROGRESS,
                run_id=session.run_id,
                payload={
                    "runId": session.run_id,
                    "progress": payload.get("progress"),
                    "total": payload.get("total"),
                    "message": payload.get("message"),
                },
            )
        else:
            logger.debug("Ignoring passthrough event=%s run_id=%s", notification.event, session.run_id)

    def _session_for(self, task_id: str | None) -> RunSession | None:
        if task_id:
            run_id = self._run_by_task.get(task_id)
            return self._sessions.get(run_id) if run_id else None

        # Untagged text belongs to the most recently started run that is still active.
        self._active_order = [run_id for run_id in self._active_order if self._is_active(run_id)]
        if not self._active_order:
            return None
        return self._sessions[self._active_order[-1]]

    def _is_active(self, run_id: str) -> bool:
        session = self._sessions.get(run_id)
        return session is not None and session.state.is_active

    def _forget_task(self, session: RunSession) -> None:
        if session.task_id:
            self._run_by_task.pop(session.task_id, None)

    def _drop_active(self, run_id: str) -> None:
        self._active_order = [existing for existing in self._active_order if existing != run_id]
