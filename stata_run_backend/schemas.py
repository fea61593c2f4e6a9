from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class RunCreateRequest(BaseModel):
    code: str = Field(min_length=1)
    run_id: str | None = None
    task_id: str | None = None
    timeout_ms: int | None = Field(default=None, ge=0)


class RunResponse(BaseModel):
    id: str
    task_id: str | None = None
    state: Literal["idle", "running", "cancelling", "succeeded", "failed", "cancelled"]
    success: bool | None = None
    reason: str | None = None
    rc: int | None = None
    error_context: str | None = None
    stdout: str = ""
    stdout_truncated: bool = False
    cancel_requested: bool = False
    log_path: str | None = None
    duration_ms: int | None = None


class NotificationRequest(BaseModel):
    data: str


class NotificationResponse(BaseModel):
    accepted: bool


class ConfigResponse(BaseModel):
    max_buffer_chars: int
    backfill_delta_chars: int
    max_raw_chars: int
    max_final_log_bytes: int
    default_timeout_ms: int
    cancel_grace_ms: int
    transport: Literal["http_bridge", "detached"]
