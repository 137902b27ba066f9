"""Health, status and self-documentation routes."""
from __future__ import annotations

import logging
import time

from flask import Blueprint, current_app, jsonify

logger = logging.getLogger(__name__)

core_bp = Blueprint("core", __name__)

_LIMIT_DOC = "Number of records to fetch (default: 10, max: 500)"
_KEY_DOC = "(Optional) RSA public key (PEM) for response encryption"

API_DOCS = {
    "/api/health": {"method": "GET", "description": "Liveness check"},
    "/api/status": {"method": "GET", "description": "Get current producer and delegation status"},
    "/api/delegation/status": {"method": "GET", "description": "Get API delegation status"},
    "/api/delegation/enable": {"method": "POST", "description": "Enable API delegation"},
    "/api/delegation/disable": {"method": "POST", "description": "Disable API delegation"},
    "/api/scrape/tweets": {
        "method": "POST",
        "description": "Search and scrape posts",
        "body": {"query": "Search query string", "limit": _LIMIT_DOC, "publicKey": _KEY_DOC},
    },
    "/api/scrape/profile": {
        "method": "POST",
        "description": "Scrape a user profile and its posts",
        "body": {"username": "Username (without @)", "limit": _LIMIT_DOC, "publicKey": _KEY_DOC},
    },
    "/api/scrape/home": {
        "method": "POST",
        "description": "Scrape home timeline posts",
        "body": {"limit": _LIMIT_DOC, "publicKey": _KEY_DOC},
    },
    "/api/sessions": {"method": "GET", "description": "List committed sessions"},
    "/api/sessions/<session_id>": {
        "method": "GET, DELETE",
        "description": "Download or delete one session",
        "query": {"origin": "app or api (default: app)"},
    },
}


def producer_ready() -> bool:
    producer = current_app.config["PIPELINE"].producer
    if producer is None:
        return False
    is_ready = getattr(producer, "is_ready", None)
    if not callable(is_ready):
        return True
    return bool(is_ready())


@core_bp.route("/health", methods=["GET"])
@core_bp.route("/api/health", methods=["GET"])
def health_check():
    """Simple health check."""
    return jsonify({"status": "ok", "service": "scrapevault"})


@core_bp.route("/api/docs", methods=["GET"])
def api_docs():
    return jsonify({"endpoints": API_DOCS})


@core_bp.route("/api/status", methods=["GET"])
def api_status():
    try:
        ready = producer_ready()
    except Exception:
        logger.exception("Producer readiness check failed")
        return jsonify({"error": "Failed to check status"}), 500
    return jsonify(
        {
            "status": "ready" if ready else "not_ready",
            "message": "Ready to scrape" if ready else "Record producer is not ready",
            "uptime_seconds": round(time.time() - current_app.config["STARTUP_TIME"], 3),
            "delegation": {
                "enabled": bool(current_app.config["DELEGATION_ENABLED"]),
                "port": current_app.config["API_PORT"],
            },
        }
    )
