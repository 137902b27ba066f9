"""Request-scoped request id for log correlation.

Each API request gets an id (the caller's ``X-Request-ID`` when it is sane,
otherwise a fresh one) and a logging Filter copies it onto every LogRecord.
"""

from __future__ import annotations

import logging
import re
from contextvars import ContextVar
from typing import Optional
from uuid import uuid4

REQUEST_ID_HEADER = "X-Request-ID"

_REQ_ID: ContextVar[str] = ContextVar("scrapevault_req_id", default="-")
_SAFE_REQ_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_req_id(incoming: Optional[str]) -> str:
    """Accept a caller-supplied id only if it is short and log-safe."""

    candidate = (incoming or "").strip()
    if candidate and _SAFE_REQ_ID.match(candidate):
        return candidate
    return uuid4().hex[:12]


def set_req_id(req_id: str) -> None:
    _REQ_ID.set(req_id)


def get_req_id() -> str:
    return _REQ_ID.get()


def clear_req_id() -> None:
    _REQ_ID.set("-")


class RequestIdFilter(logging.Filter):
    """Inject `req_id` into log records (always present)."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - required by logging.Filter
        record.req_id = get_req_id()
        return True
