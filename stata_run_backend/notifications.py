from __future__ import annotations

import logging
from typing import Any

from .types import LOG, LOG_PATH, PROGRESS, TERMINAL_EVENTS, Notification
from .utils import first_text, loads_json

logger = logging.getLogger(__name__)

TASK_ID_KEYS = ("task_id", "taskId")
LOG_PATH_KEYS = ("log_path", "logPath")


def task_id_of(payload: dict[str, Any]) -> str | None:
    value = first_text(payload, *TASK_ID_KEYS)
    return value.strip() if value else None


def log_path_of(payload: dict[str, Any]) -> str | None:
    value = first_text(payload, *LOG_PATH_KEYS)
    if value:
        return value.strip()
    error = payload.get("error")
    if isinstance(error, dict):
        nested = first_text(error, *LOG_PATH_KEYS)
        return nested.strip() if nested else None
    return None


def parse_notification(raw: str | None) -> Notification | None:
    """Decode one inbound notification string.

    Non-JSON or non-object data is unstructured log text. Structured payloads
    that cannot be acted on (no event, terminal event without a task id) are
    dropped and ``None`` is returned.
    """
    text = "" if raw is None else str(raw)
    if not text:
        return None

    stripped = text.strip()
    parsed = loads_json(stripped, None) if stripped.startswith("{") else None
    if not isinstance(parsed, dict):
        return Notification(event=LOG, text=text)

    event = parsed.get("event")
    if not isinstance(event, str) or not event.strip():
        logger.debug("Skipping notification without event keys=%s", sorted(parsed.keys())[:10])
        return None
    event = event.strip()
    task_id = task_id_of(parsed)

    if event in TERMINAL_EVENTS and not task_id:
        logger.debug("Skipping %s notification without task id", event)
        return None

    if event == LOG:
        chunk = parsed.get("text")
        if not isinstance(chunk, str):
            chunk = parsed.get("data")
        if not isinstance(chunk, str) or not chunk:
            logger.debug("Skipping log notification without text task_id=%s", task_id)
            return None
        return Notification(event=LOG, task_id=task_id, payload=parsed, text=chunk)

    if event == LOG_PATH:
        path = first_text(parsed, "path", *LOG_PATH_KEYS)
        if not path:
            logger.debug("Skipping log_path notification without path task_id=%s", task_id)
            return None
        return Notification(event=LOG_PATH, task_id=task_id, payload=parsed, text=path.strip())

    if event == PROGRESS and not isinstance(parsed.get("progress"), (int, float)):
        logger.debug("Skipping progress notification without numeric progress task_id=%s", task_id)
        return None

    return Notification(event=event, task_id=task_id, payload=parsed)
