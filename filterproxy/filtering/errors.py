from __future__ import annotations

import os
import re
from typing import Optional


class ReloadError(ValueError):
    """A rule source could not be compiled; the previous list stays active."""

    kind = "InvalidPattern"

    def __init__(self, list_name: str, line_no: int, pattern: str, reason: str) -> None:
        self.list_name = list_name
        self.line_no = int(line_no)
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"{list_name}: invalid pattern on line {self.line_no} ({pattern!r}): {reason}")


class DownstreamError(Exception):
    def __init__(self, url: str, detail: str = "") -> None:
        self.url = url
        self.detail = detail
        super().__init__(f"{url}: {detail}" if detail else url)


class DownstreamConnectError(DownstreamError):
    pass


class DownstreamResetError(DownstreamError):
    pass


class DownstreamTimeoutError(DownstreamResetError):
    # The timed-out connection is aborted, so it is handled like a reset.
    pass


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 1].rstrip() + "…"
    return s


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: Optional[int] = 200,
) -> str:
    """Return a user-safe error message.

    - By default, avoids leaking internal exception details.
    - For ValueError (rule reload failures included), returns the message.
    - If EXPOSE_INTERNAL_ERRORS is set, returns the exception type + message.
    """
    limit = int(max_len or 0)
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=limit)
        return detail or default

    if isinstance(e, ValueError):
        msg = clean_text(str(e), max_len=limit)
        return msg or default

    return default
