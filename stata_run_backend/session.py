from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .buffer import BoundedBuffer
from .config import DEFAULT_BACKFILL_DELTA_CHARS, DEFAULT_MAX_BUFFER_CHARS, Settings
from .correlator import TaskCorrelator
from .diagnostics import parse_diagnostics
from .events import RUN_FINISHED, RUN_LOG_APPEND, RUN_STARTED
from .log_filter import filter_internal_lines
from .notifications import log_path_of
from .transport import Transport
from .types import TOOL_ERROR, EmitFn, RunResult, RunState, Settlement, SettlementKind
from .utils import first_int, first_text, make_id

logger = logging.getLogger(__name__)

REASON_COMPLETED = "completed"
REASON_ERROR = "error"
REASON_TOOL_ERROR = "tool_error"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"


class RunStateError(Exception):
    pass


class RunSession:
    """One execution request: submit, stream log chunks, finish exactly once.

    All mutation happens on the event loop thread, from notification delivery,
    correlator callbacks, or the caller's ``submit``/``cancel``.
    """

    def __init__(
        self,
        *,
        run_id: str,
        correlator: TaskCorrelator,
        emit: EmitFn,
        transport: Transport | None = None,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
        backfill_delta_chars: int = DEFAULT_BACKFILL_DELTA_CHARS,
        max_raw_chars: int = 500_000,
        max_final_log_bytes: int = 50_000,
        cancel_grace_ms: int = 2_000,
        tag_open: str = "{",
    ) -> None:
        self.run_id = run_id
        self.correlator = correlator
        self.transport = transport
        self._emit = emit
        self.max_buffer_chars = max_buffer_chars
        self.backfill_delta_chars = backfill_delta_chars
        self.max_raw_chars = max(1, max_raw_chars)
        self.max_final_log_bytes = max_final_log_bytes
        self.cancel_grace_ms = cancel_grace_ms
        self.tag_open = tag_open
        self.state = RunState.IDLE
        self._reset_output()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        run_id: str,
        correlator: TaskCorrelator,
        emit: EmitFn,
        transport: Transport | None = None,
    ) -> RunSession:
        return cls(
            run_id=run_id,
            correlator=correlator,
            emit=emit,
            transport=transport,
            max_buffer_chars=settings.max_buffer_chars,
            backfill_delta_chars=settings.backfill_delta_chars,
            max_raw_chars=settings.max_raw_chars,
            max_final_log_bytes=settings.max_final_log_bytes,
            cancel_grace_ms=settings.cancel_grace_ms,
            tag_open=settings.tag_open,
        )

    def _reset_output(self) -> None:
        self.task_id: str | None = None
        self.code = ""
        self.raw_output = ""
        self.buffer = BoundedBuffer(self.max_buffer_chars, self.backfill_delta_chars, tag_open=self.tag_open)
        self.rc: int | None = None
        self.error_context: str | None = None
        self.cancel_requested = False
        self.log_path: str | None = None
        self.result: RunResult | None = None
        self._started_at: float | None = None
        self._done: asyncio.Future[RunResult] | None = None
        self._cancel_timer: asyncio.TimerHandle | None = None

    @property
    def stdout(self) -> str:
        return self.buffer.text

    async def submit(self, code: str, *, timeout_ms: int | None = None, task_id: str | None = None) -> str:
        if self.state is not RunState.IDLE:
            raise RunStateError(f"Run {self.run_id} is {self.state.value}; submit requires an idle run")
        if not code or not code.strip():
            raise ValueError("code cannot be empty")

        loop = asyncio.get_running_loop()
        task_id = task_id or make_id("task")
        self.correlator.track(task_id, self._on_settle, timeout_ms)

        self.task_id = task_id
        self.code = code
        self.state = RunState.RUNNING
        self._started_at = loop.time()
        self._done = loop.create_future()
        logger.info("Run started run_id=%s task_id=%s timeout_ms=%s", self.run_id, task_id, timeout_ms)
        self._emit(RUN_STARTED, {"runId": self.run_id, "taskId": task_id, "code": code})

        if self.transport is not None:
            try:
                await self.transport.submit(task_id=task_id, code=code)
            except Exception as exc:
                logger.exception("Submitting task failed run_id=%s task_id=%s", self.run_id, task_id)
                self.correlator.notify(task_id, TOOL_ERROR, {"error": f"Submit failed: {exc}"})
        return task_id

    def apply_log_chunk(self, text: str | None) -> bool:
        if self.state is not RunState.RUNNING:
            logger.debug("Ignoring log chunk run_id=%s state=%s", self.run_id, self.state.value)
            return False
        chunk = "" if text is None else str(text)
        if not chunk:
            return False

        self.raw_output = (self.raw_output + chunk)[-self.max_raw_chars:]
        filtered = filter_internal_lines(chunk)
        if not filtered:
            return False

        self.buffer.append(filtered)
        diagnostics = parse_diagnostics(filtered)
        if diagnostics.rc is not None:
            self.rc = diagnostics.rc
        if diagnostics.error_context is not None:
            if self.error_context:
                self.error_context = f"{self.error_context}\n{diagnostics.error_context}"
            else:
                self.error_context = diagnostics.error_context

        self._emit(RUN_LOG_APPEND, {"runId": self.run_id, "text": filtered})
        return True

    def set_log_path(self, path: str | None) -> None:
        if path and self.state.is_active:
            self.log_path = path

    async def cancel(self) -> bool:
        if self.state is not RunState.RUNNING:
            return False
        self.state = RunState.CANCELLING
        self.cancel_requested = True
        logger.info("Cancelling run run_id=%s task_id=%s", self.run_id, self.task_id)

        if self.transport is not None and self.task_id:
            try:
                await self.transport.cancel(task_id=self.task_id)
            except Exception:
                logger.exception("Cancel request failed run_id=%s task_id=%s", self.run_id, self.task_id)

        if self.state is RunState.CANCELLING:
            self._arm_cancel_grace()
        return True

    def _arm_cancel_grace(self) -> None:
        if self.cancel_grace_ms <= 0:
            self.correlator.cancel(self.task_id, "Run cancelled")
            return
        loop = asyncio.get_running_loop()
        self._cancel_timer = loop.call_later(
            self.cancel_grace_ms / 1000.0,
            self.correlator.cancel,
            self.task_id,
            "Run cancelled",
        )

    async def wait(self) -> RunResult:
        if self.result is not None:
            return self.result
        if self._done is None:
            raise RunStateError(f"Run {self.run_id} has not been submitted")
        return await asyncio.shield(self._done)

    def recycle(self) -> None:
        if self.state.is_active:
            raise RunStateError(f"Run {self.run_id} is still {self.state.value}")
        self._reset_output()
        self.state = RunState.IDLE

    def _read_final_log(self, path: str) -> str | None:
        target = Path(path).expanduser()
        try:
            size = target.stat().st_size
            if size <= 0 or size > self.max_final_log_bytes:
                logger.debug("Skipping final log run_id=%s path=%s size=%s", self.run_id, target, size)
                return None
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Could not read final log run_id=%s path=%s error=%s", self.run_id, target, exc)
            return None

    def _final_output(self, payload: dict[str, Any]) -> str | None:
        stdout = payload.get("stdout")
        if isinstance(stdout, str) and stdout.strip():
            return filter_internal_lines(stdout)

        path = log_path_of(payload)
        if path:
            self.log_path = path
        path = path or self.log_path
        if not path:
            return None
        text = self._read_final_log(path)
        return filter_internal_lines(text) if text is not None else None

    def _on_settle(self, settlement: Settlement) -> None:
        if not self.state.is_active:
            logger.warning(
                "Dropping settlement run_id=%s task_id=%s kind=%s state=%s",
                self.run_id,
                settlement.task_id,
                settlement.kind.value,
                self.state.value,
            )
            return
        if self._cancel_timer is not None:
            self._cancel_timer.cancel()
            self._cancel_timer = None

        kind = settlement.kind
        payload = settlement.payload
        # A cancelled run ends cancelled whichever settlement reaches it first.
        cancelling = self.state is RunState.CANCELLING
        final_text = None
        if not cancelling and kind in (SettlementKind.SUCCESS, SettlementKind.FAILURE):
            final_text = self._final_output(payload)
        if final_text is not None:
            self.buffer.reconcile(final_text)

        diagnostics = parse_diagnostics(final_text if final_text is not None else filter_internal_lines(self.raw_output))
        rc = first_int(payload, "rc")
        if rc is None:
            rc = diagnostics.rc if diagnostics.rc is not None else self.rc
        error_context = diagnostics.error_context or self.error_context

        if cancelling:
            if kind is not SettlementKind.CANCELLED:
                logger.info(
                    "Settlement overridden by cancel run_id=%s task_id=%s kind=%s",
                    self.run_id,
                    settlement.task_id,
                    kind.value,
                )
            success = False
            state = RunState.CANCELLED
            reason = REASON_CANCELLED
        elif kind is SettlementKind.SUCCESS:
            success = payload.get("success") is not False and (rc is None or rc == 0)
            state = RunState.SUCCEEDED if success else RunState.FAILED
            reason = REASON_COMPLETED if success else REASON_ERROR
            if not success and error_context is None:
                error_context = first_text(payload, "error", "message")
        elif kind is SettlementKind.FAILURE:
            success = False
            state = RunState.FAILED
            reason = REASON_TOOL_ERROR
            error_context = settlement.message or error_context
        elif kind is SettlementKind.TIMEOUT:
            success = False
            state = RunState.FAILED
            reason = REASON_TIMEOUT
            error_context = settlement.message
        else:
            success = False
            state = RunState.CANCELLED
            reason = REASON_CANCELLED

        self._finish(state=state, success=success, reason=reason, rc=rc, error_context=error_context)

    def _finish(self, *, state: RunState, success: bool, reason: str, rc: int | None, error_context: str | None) -> None:
        duration_ms: int | None = None
        if self._started_at is not None:
            duration_ms = max(0, int((asyncio.get_running_loop().time() - self._started_at) * 1000))

        self.state = state
        self.rc = rc
        self.error_context = error_context
        self.result = RunResult(
            run_id=self.run_id,
            task_id=self.task_id or "",
            state=state,
            success=success,
            stdout=self.buffer.text,
            reason=reason,
            rc=rc,
            error_context=error_context,
            duration_ms=duration_ms,
        )
        logger.info(
            "Run finished run_id=%s task_id=%s state=%s rc=%s duration_ms=%s",
            self.run_id,
            self.task_id,
            state.value,
            rc,
            duration_ms,
        )

        event: dict[str, Any] = {
            "runId": self.run_id,
            "taskId": self.task_id,
            "success": success,
            "stdout": self.buffer.text,
            "reason": reason,
            "durationMs": duration_ms,
        }
        if rc is not None:
            event["rc"] = rc
        if error_context is not None:
            event["errorContext"] = error_context
        self._emit(RUN_FINISHED, event)

        if self._done is not None and not self._done.done():
            self._done.set_result(self.result)

    def view(self) -> dict[str, Any]:
        result = self.result
        return {
            "id": self.run_id,
            "task_id": self.task_id,
            "state": self.state.value,
            "success": result.success if result else None,
            "reason": result.reason if result else None,
            "rc": self.rc,
            "error_context": self.error_context,
            "stdout": self.buffer.text,
            "stdout_truncated": self.buffer.truncated,
            "cancel_requested": self.cancel_requested,
            "log_path": self.log_path,
            "duration_ms": result.duration_ms if result else None,
        }
