"""Listing, download and deletion of committed sessions."""
from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from scrapevault.api.request_utils import parse_origin
from scrapevault.errors import SessionNotFoundError, TransientStoreError

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__, url_prefix="/api/sessions")


@sessions_bp.route("", methods=["GET"])
def list_sessions():
    try:
        headers = current_app.config["PIPELINE"].list_sessions()
    except TransientStoreError as exc:
        return jsonify({"error": "Storage temporarily unavailable", "details": str(exc)}), 503
    return jsonify({"sessions": [header.to_dict() for header in headers], "count": len(headers)})


@sessions_bp.route("/<session_id>", methods=["GET"])
def get_session(session_id: str):
    """Return one session header with its committed records.

    Records of sessions delivered encrypted are not served in plaintext.
    """
    pipeline = current_app.config["PIPELINE"]
    try:
        origin = parse_origin(request)
        header = pipeline.load_session(session_id, origin)
        if header is None:
            return jsonify({"error": f"Session {session_id} not found"}), 404
        records = None if header.encrypted else pipeline.fetch_committed(session_id, origin)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except SessionNotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except TransientStoreError as exc:
        return jsonify({"error": "Storage temporarily unavailable", "details": str(exc)}), 503

    return jsonify(
        {
            "session": header.to_dict(),
            "records": [record.to_dict() for record in records] if records is not None else None,
        }
    )


@sessions_bp.route("/<session_id>", methods=["DELETE"])
def delete_session(session_id: str):
    pipeline = current_app.config["PIPELINE"]
    try:
        origin = parse_origin(request)
        deleted = pipeline.delete_session(session_id, origin)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except TransientStoreError as exc:
        return jsonify({"error": "Storage temporarily unavailable", "details": str(exc)}), 503
    if not deleted:
        return jsonify({"error": f"Session {session_id} not found"}), 404
    logger.info("Deleted session %s (%s) via API", session_id, origin.value)
    return jsonify({"status": "success", "deleted": session_id})
