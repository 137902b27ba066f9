"""Validation helpers shared by the delegated API routes."""
from __future__ import annotations

from typing import Any

from flask import Request

from scrapevault.data.models import SessionOrigin

DEFAULT_LIMIT = 10
MAX_LIMIT = 500


def parse_json_body(request: Request) -> dict:
    if not request.get_data(cache=True):
        return {}
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def parse_limit(raw: Any) -> int:
    """Lenient limit: unparseable or non-positive means the default, capped at MAX_LIMIT."""

    if isinstance(raw, bool) or raw is None:
        return DEFAULT_LIMIT
    try:
        value = int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_LIMIT
    if value <= 0:
        return DEFAULT_LIMIT
    return min(value, MAX_LIMIT)


def require_text(payload: dict, name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} parameter is required")
    return value.strip()


def parse_origin(request: Request, default: SessionOrigin = SessionOrigin.APP) -> SessionOrigin:
    raw = (request.args.get("origin") or "").strip().lower()
    if not raw:
        return default
    try:
        return SessionOrigin(raw)
    except ValueError as exc:
        allowed = ", ".join(origin.value for origin in SessionOrigin)
        raise ValueError(f"origin must be one of {allowed}; received '{raw}'") from exc
