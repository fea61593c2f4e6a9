from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_MAX_BUFFER_CHARS = 20_000
DEFAULT_BACKFILL_DELTA_CHARS = 5_000


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8766
    max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS
    backfill_delta_chars: int = DEFAULT_BACKFILL_DELTA_CHARS
    max_raw_chars: int = 500_000
    max_final_log_bytes: int = 50_000
    default_timeout_ms: int = 45_000
    cancel_grace_ms: int = 2_000
    tag_open: str = "{"
    bridge_url: str | None = None
    bridge_timeout_seconds: int = 10
    max_events: int = 5_000
    log_level: str = "INFO"

    def public_view(self) -> dict[str, Any]:
        return {
            "max_buffer_chars": self.max_buffer_chars,
            "backfill_delta_chars": self.backfill_delta_chars,
            "max_raw_chars": self.max_raw_chars,
            "max_final_log_bytes": self.max_final_log_bytes,
            "default_timeout_ms": self.default_timeout_ms,
            "cancel_grace_ms": self.cancel_grace_ms,
            "transport": "http_bridge" if self.bridge_url else "detached",
        }


def load_settings() -> Settings:
    tag_open = os.getenv("STATA_RUN_TAG_OPEN", "{")
    return Settings(
        host=os.getenv("STATA_RUN_HOST", "127.0.0.1"),
        port=int(os.getenv("STATA_RUN_PORT", "8766")),
        max_buffer_chars=int(os.getenv("STATA_RUN_MAX_BUFFER_CHARS", str(DEFAULT_MAX_BUFFER_CHARS))),
        backfill_delta_chars=int(os.getenv("STATA_RUN_BACKFILL_DELTA_CHARS", str(DEFAULT_BACKFILL_DELTA_CHARS))),
        max_raw_chars=int(os.getenv("STATA_RUN_MAX_RAW_CHARS", "500000")),
        max_final_log_bytes=int(os.getenv("STATA_RUN_MAX_FINAL_LOG_BYTES", "50000")),
        default_timeout_ms=int(os.getenv("STATA_RUN_DEFAULT_TIMEOUT_MS", "45000")),
        cancel_grace_ms=int(os.getenv("STATA_RUN_CANCEL_GRACE_MS", "2000")),
        tag_open=tag_open[:1] or "{",
        bridge_url=(os.getenv("STATA_RUN_BRIDGE_URL") or "").strip() or None,
        bridge_timeout_seconds=int(os.getenv("STATA_RUN_BRIDGE_TIMEOUT_SECONDS", "10")),
        max_events=int(os.getenv("STATA_RUN_MAX_EVENTS", "5000")),
        log_level=os.getenv("STATA_RUN_LOG_LEVEL", "INFO").strip().upper(),
    )
