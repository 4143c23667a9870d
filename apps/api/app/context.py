from __future__ import annotations

import re
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def normalize_correlation_id(raw: str | bytes | None) -> str | None:
    """Return the caller-supplied correlation id if it is safe to echo, else None."""

    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("latin-1")
    value = raw.strip()
    if not _CORRELATION_ID_RE.match(value):
        return None
    return value


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()
