"""Delegation toggle and delegated scrape routes."""
from __future__ import annotations

import logging
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from scrapevault.api.envelope import encrypt_payload, load_public_key
from scrapevault.api.request_utils import parse_json_body, parse_limit, require_text
from scrapevault.api.routes.core import producer_ready
from scrapevault.data.models import SessionKind, SessionOrigin, SessionStatus
from scrapevault.errors import EnvelopeError, TransientStoreError

logger = logging.getLogger(__name__)

delegation_bp = Blueprint("delegation", __name__, url_prefix="/api")


@delegation_bp.route("/delegation/status", methods=["GET"])
def delegation_status():
    return jsonify(
        {
            "enabled": bool(current_app.config["DELEGATION_ENABLED"]),
            "port": current_app.config["API_PORT"],
        }
    )


@delegation_bp.route("/delegation/enable", methods=["POST"])
def enable_delegation():
    current_app.config["DELEGATION_ENABLED"] = True
    logger.info("API delegation enabled")
    return jsonify(
        {
            "status": "success",
            "message": "API delegation enabled",
            "port": current_app.config["API_PORT"],
        }
    )


@delegation_bp.route("/delegation/disable", methods=["POST"])
def disable_delegation():
    current_app.config["DELEGATION_ENABLED"] = False
    logger.info("API delegation disabled")
    return jsonify({"status": "success", "message": "API delegation disabled"})


@delegation_bp.route("/scrape/tweets", methods=["POST"])
def scrape_tweets():
    """Run a delegated search session for ``query``."""
    return _run_delegated(SessionKind.SEARCH, target_field="query")


@delegation_bp.route("/scrape/profile", methods=["POST"])
def scrape_profile():
    """Run a delegated profile session for ``username``."""
    return _run_delegated(SessionKind.PROFILE, target_field="username")


@delegation_bp.route("/scrape/home", methods=["POST"])
def scrape_home():
    """Run a delegated home-timeline session."""
    return _run_delegated(SessionKind.TIMELINE, target_field=None)


def _run_delegated(kind: SessionKind, *, target_field: Optional[str]):
    endpoint = request.path
    if not producer_ready():
        logger.warning("API attempt while producer not ready endpoint=%s ip=%s", endpoint, request.remote_addr)
        return jsonify({"error": "Record producer is not ready"}), 403
    if not current_app.config["DELEGATION_ENABLED"]:
        logger.warning("API attempt without delegation endpoint=%s ip=%s", endpoint, request.remote_addr)
        return jsonify({"error": "API delegation is not enabled"}), 403

    try:
        payload = parse_json_body(request)
        target = require_text(payload, target_field) if target_field else None
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    if kind is SessionKind.PROFILE and target:
        target = target.lstrip("@")

    public_key = payload.get("publicKey")
    if public_key:
        try:
            load_public_key(public_key)
        except EnvelopeError as exc:
            logger.warning("Rejected public key endpoint=%s: %s", endpoint, exc)
            return jsonify({"error": "Invalid public key or encryption error"}), 400

    limit = parse_limit(payload.get("limit"))
    logger.info(
        "Starting delegated %s scrape target=%s limit=%s encrypted=%s",
        kind.value,
        target or "-",
        limit,
        bool(public_key),
    )

    pipeline = current_app.config["PIPELINE"]
    try:
        result = pipeline.run_session(
            kind,
            target,
            SessionOrigin.API,
            desired_count=limit,
            encrypted=bool(public_key),
        )
        # Answer from the committed set as re-read from the store.
        records = pipeline.fetch_committed(result.session_id, SessionOrigin.API)
    except TransientStoreError as exc:
        logger.error("Delegated %s scrape deferred: %s", kind.value, exc)
        return jsonify({"error": "Storage temporarily unavailable", "details": str(exc)}), 503
    except Exception as exc:
        logger.exception("Delegated %s scrape failed endpoint=%s", kind.value, endpoint)
        return jsonify({"error": f"Failed to scrape {kind.value}: {exc}"}), 500

    logger.info(
        "Delegated %s scrape finished session=%s status=%s records=%s",
        kind.value,
        result.session_id,
        result.status.value,
        len(records),
    )

    tweets = [record.to_dict() for record in records]
    if kind is SessionKind.PROFILE:
        data = {"profile": result.profile.to_dict() if result.profile else None, "tweets": tweets}
    else:
        data = tweets

    http_status = 500 if result.status is SessionStatus.FAILED else 200
    session_info = result.to_dict()
    body = {
        "status": "success" if result.status is SessionStatus.COMPLETED else result.status.value,
        "session": session_info,
    }
    if public_key:
        session_info.pop("profile", None)
        try:
            body["encrypted"] = True
            body["data"] = encrypt_payload(data, public_key)
        except EnvelopeError as exc:
            logger.error("Encryption error endpoint=%s: %s", endpoint, exc)
            return jsonify({"error": "Invalid public key or encryption error"}), 400
    elif kind is SessionKind.PROFILE:
        body["data"] = data
    else:
        body["tweets"] = data
    return jsonify(body), http_status
