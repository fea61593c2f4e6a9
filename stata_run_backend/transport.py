from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol
from urllib import error, parse, request

from .config import Settings

logger = logging.getLogger(__name__)


class TransportError(Exception):
    pass


class Transport(Protocol):
    async def submit(self, *, task_id: str, code: str) -> None: ...

    async def cancel(self, *, task_id: str) -> None: ...


class DetachedTransport:
    """No outbound channel: the interpreter bridge picks runs up from the event stream."""

    async def submit(self, *, task_id: str, code: str) -> None:
        logger.info("Detached submit task_id=%s code=%s", task_id, code.replace("\n", " ")[:200])

    async def cancel(self, *, task_id: str) -> None:
        logger.info("Detached cancel task_id=%s", task_id)


class HttpBridgeTransport:
    def __init__(self, base_url: str, *, timeout_seconds: int = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def submit(self, *, task_id: str, code: str) -> None:
        await asyncio.to_thread(self._post, "/tasks", {"task_id": task_id, "code": code})

    async def cancel(self, *, task_id: str) -> None:
        await asyncio.to_thread(self._post, f"/tasks/{parse.quote(task_id, safe='')}/cancel", {"task_id": task_id})

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        req = request.Request(
            f"{self.base_url}{path}",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_text = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            logger.warning("Bridge request failed path=%s status=%s detail=%s", path, exc.code, detail[:500])
            raise TransportError(f"Bridge request {path} failed with status {exc.code}") from exc
        except (error.URLError, OSError) as exc:
            raise TransportError(f"Bridge request {path} failed: {exc}") from exc

        if not response_text.strip():
            return {}
        try:
            parsed = json.loads(response_text)
        except json.JSONDecodeError:
            logger.warning("Bridge returned non-JSON payload path=%s", path)
            return {}
        return parsed if isinstance(parsed, dict) else {}


def build_transport(settings: Settings) -> Transport:
    if settings.bridge_url:
        return HttpBridgeTransport(settings.bridge_url, timeout_seconds=settings.bridge_timeout_seconds)
    return DetachedTransport()
