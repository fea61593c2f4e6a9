from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

TASK_DONE = "task_done"
TOOL_ERROR = "tool_error"
TASK_CANCELLED = "task_cancelled"
LOG = "log"
LOG_PATH = "log_path"
PROGRESS = "progress"

TERMINAL_EVENTS = frozenset({TASK_DONE, TOOL_ERROR, TASK_CANCELLED})


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (RunState.RUNNING, RunState.CANCELLING)


class SettlementKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Notification:
    event: str
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    text: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS


@dataclass(frozen=True, slots=True)
class Settlement:
    kind: SettlementKind
    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.kind is SettlementKind.SUCCESS


SettleCallback = Callable[[Settlement], None]
EmitFn = Callable[[str, dict[str, Any]], None]


@dataclass(slots=True)
class PendingTask:
    task_id: str
    on_settle: SettleCallback
    started_at: float
    timeout_ms: int | None = None
    deadline: float | None = None
    timer: asyncio.TimerHandle | None = None


@dataclass(frozen=True, slots=True)
class Diagnostics:
    rc: int | None = None
    error_context: str | None = None

    @property
    def has_error(self) -> bool:
        return self.error_context is not None


@dataclass(slots=True)
class RunResult:
    run_id: str
    task_id: str
    state: RunState
    success: bool
    stdout: str
    reason: str
    rc: int | None = None
    error_context: str | None = None
    duration_ms: int | None = None
