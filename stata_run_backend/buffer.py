from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def safe_slice_tail(text: str | None, limit: int, tag_open: str = "{") -> str:
    """Keep roughly the last ``limit`` characters, starting on a line or tag boundary.

    The cut lands on the first newline (consumed) or the first ``tag_open``
    (kept) at or after ``len(text) - limit``. When neither exists before the
    final character, a raw tail slice of exactly ``limit`` characters is used.
    """
    if not text or len(text) <= limit:
        return text or ""

    start = len(text) - limit
    newline_at = text.find("\n", start)
    tag_at = text.find(tag_open, start)

    cut_point = -1
    offset = 1
    if newline_at != -1 and (tag_at == -1 or newline_at < tag_at):
        cut_point = newline_at
        offset = 1
    elif tag_at != -1:
        cut_point = tag_at
        offset = 0

    if cut_point != -1 and cut_point < len(text) - 1:
        return text[cut_point + offset:]
    return text[-limit:]


class BoundedBuffer:
    def __init__(self, max_chars: int, backfill_delta: int, *, tag_open: str = "{") -> None:
        if max_chars < 1:
            raise ValueError("max_chars must be at least 1")
        if backfill_delta < 0:
            raise ValueError("backfill_delta cannot be negative")
        self.max_chars = max_chars
        self.backfill_delta = backfill_delta
        self.tag_open = tag_open
        self._text = ""
        self.truncated = False

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def clear(self) -> None:
        self._text = ""
        self.truncated = False

    def append(self, chunk: str | None) -> str:
        if not chunk:
            return self._text
        combined = self._text + chunk
        if len(combined) > self.max_chars:
            combined = safe_slice_tail(combined, self.max_chars, self.tag_open)
            self.truncated = True
        self._text = combined
        return self._text

    def reconcile(self, final: str | None) -> bool:
        """Backfill from the authoritative final output when it is safe to do so.

        Returns True when the buffer was replaced.
        """
        final = final or ""
        current = self._text

        # Delta is measured against the untruncated payload.
        delta = len(final) - len(current)
        needs_initial = not current and bool(final)
        needs_small_delta = delta > 0 and delta <= self.backfill_delta

        if needs_initial or needs_small_delta:
            self._text = safe_slice_tail(final, self.max_chars, self.tag_open)
            self.truncated = len(self._text) < len(final)
            return True

        if delta > self.backfill_delta:
            logger.debug(
                "Skipping backfill delta=%s limit=%s current_len=%s",
                delta,
                self.backfill_delta,
                len(current),
            )
        return False
