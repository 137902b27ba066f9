"""Flask application factory for the delegated scrape API."""
from __future__ import annotations

import logging
import logging.handlers
import time
from pathlib import Path
from typing import Optional

from flask import Flask, g, request
from flask_cors import CORS

from scrapevault.api.request_context import (
    REQUEST_ID_HEADER,
    RequestIdFilter,
    clear_req_id,
    resolve_req_id,
    set_req_id,
)
from scrapevault.api.routes.core import core_bp
from scrapevault.api.routes.delegation import delegation_bp
from scrapevault.api.routes.sessions import sessions_bp
from scrapevault.config import get_api_settings
from scrapevault.pipeline import ScrapePipeline

logger = logging.getLogger(__name__)


def create_app(pipeline: ScrapePipeline, config_overrides: Optional[dict] = None) -> Flask:
    """Initialize and configure the Flask application."""
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes by default

    settings = get_api_settings()
    app.config["STARTUP_TIME"] = time.time()
    app.config["API_PORT"] = settings.port
    app.config["API_LOG_LEVEL"] = settings.log_level
    app.config["API_LOG_DIR"] = Path("logs")
    app.config["DELEGATION_ENABLED"] = False
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app.config["API_LOG_DIR"], app.config["API_LOG_LEVEL"])

    # Services are injected through app.config instead of module globals.
    app.config["PIPELINE"] = pipeline
    pipeline.staging.ensure_initialized()

    @app.before_request
    def _assign_request_id():
        req_id = resolve_req_id(request.headers.get(REQUEST_ID_HEADER))
        g.req_id = req_id
        set_req_id(req_id)

    @app.after_request
    def _echo_request_id(response):
        response.headers[REQUEST_ID_HEADER] = g.get("req_id", "-")
        return response

    @app.teardown_request
    def _clear_request_id(exc):
        clear_req_id()

    app.register_blueprint(core_bp)
    app.register_blueprint(delegation_bp)
    app.register_blueprint(sessions_bp)

    logger.info("Scrape delegation API initialized (delegation=%s)", app.config["DELEGATION_ENABLED"])
    return app


def _configure_logging(log_dir: Path, log_level: int) -> None:
    """Attach a rotating file handler for API diagnostics."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "api.log"

    root = logging.getLogger()

    # Avoid adding duplicate handlers if re-initializing
    already_configured = any(
        isinstance(h, logging.handlers.RotatingFileHandler)
        and getattr(h, "baseFilename", "") == str(log_path.resolve())
        for h in root.handlers
    )
    if already_configured:
        return

    root.setLevel(min(root.level or logging.WARNING, log_level))

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=5 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.addFilter(RequestIdFilter())
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] req=%(req_id)s %(name)s:%(lineno)d: %(message)s"
        )
    )
    root.addHandler(file_handler)
