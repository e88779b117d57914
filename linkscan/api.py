"""Main Flask API for LinkScan.

Run: python -m linkscan.api
"""

import json
import logging
from typing import Optional

import redis as redis_lib
from flask import Blueprint, Flask, Response, abort, current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from . import __version__, config
from .app.canonicalize import InvalidUrlError
from .app.scanner import Scanner
from .db import SqlRepository, init_db
from .jobs import JobOrchestrator, QueueFullError

logger = logging.getLogger("api")

# seconds without an event before the stream sends a keepalive comment
STREAM_HEARTBEAT_SECONDS = 15.0

limiter = Limiter(key_func=get_remote_address, default_limits=["60 per minute"])
bp = Blueprint("linkscan", __name__)


def _scanner() -> Scanner:
    return current_app.extensions["linkscan"]["scanner"]


def _orchestrator() -> JobOrchestrator:
    return current_app.extensions["linkscan"]["orchestrator"]


def require_api_key() -> None:
    api_key = current_app.config.get("API_KEY")
    if not api_key:
        return
    key = request.headers.get("X-API-Key") or request.args.get("api_key")
    if not key or key != api_key:
        abort(401, description="Invalid or missing API key")


def _url_from_body() -> Optional[str]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    url = data.get("url")
    if not isinstance(url, str) or not url.strip():
        return None
    return url


def _sse(event: str, payload) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "version": __version__})


@bp.route("/api/v1/scan", methods=["POST"])
@limiter.limit("30 per minute")
def submit_scan():
    require_api_key()
    url = _url_from_body()
    if url is None:
        return jsonify({"error": "missing or empty 'url' in JSON body"}), 400
    try:
        job_id = _orchestrator().submit(url)
    except QueueFullError:
        return jsonify({"error": "queue_full"}), 503, {"Retry-After": "5"}
    return jsonify({"jobId": job_id}), 200


@bp.route("/api/v1/scan/<job_id>", methods=["GET"])
def scan_snapshot(job_id: str):
    require_api_key()
    snapshot = _orchestrator().get_snapshot(job_id)
    if snapshot is None:
        return jsonify({"error": "not_found"}), 404
    return jsonify(snapshot)


@bp.route("/api/v1/scan/<job_id>/stream", methods=["GET"])
def scan_stream(job_id: str):
    require_api_key()
    orchestrator = _orchestrator()
    channel = orchestrator.subscribe(job_id)
    if channel is None:
        return jsonify({"error": "not_found"}), 404
    heartbeat = current_app.config.get("STREAM_HEARTBEAT_SECONDS", STREAM_HEARTBEAT_SECONDS)

    def events():
        try:
            for event in channel.listen(timeout=heartbeat):
                if event is None:
                    yield ": keepalive\n\n"
                else:
                    yield _sse("snapshot", event)
        finally:
            # client went away or the job finished
            orchestrator.unsubscribe(job_id, channel)

    return Response(events(), mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})


@bp.route("/api/analyze", methods=["POST"])
@limiter.limit("20 per minute")
def analyze():
    require_api_key()
    url = _url_from_body()
    if url is None:
        return jsonify({"error": "missing or empty 'url' in JSON body"}), 400
    try:
        result = _scanner().analyze(url)
    except InvalidUrlError as e:
        return jsonify({"error": "invalid_url", "detail": str(e)}), 400
    except Exception as e:
        logger.exception("Scanner failed: %s", e)
        return jsonify({"error": "scanner_failed", "detail": str(e)}), 500
    return jsonify(result), 200


@bp.route("/api/verdict", methods=["GET"])
@limiter.limit("60 per minute")
def verdict():
    require_api_key()
    url = request.args.get("url", "")
    if not url.strip():
        return jsonify({"error": "missing 'url' query parameter"}), 400
    try:
        result = _scanner().lookup_verdict(url)
    except InvalidUrlError as e:
        return jsonify({"error": "invalid_url", "detail": str(e)}), 400
    if result is None:
        return jsonify({"message": "Not analyzed yet"}), 404
    return jsonify(result), 200


def _http_error(exc: HTTPException):
    return jsonify({"error": exc.name.lower().replace(" ", "_"), "detail": exc.description}), exc.code


def _configure_rate_limit_storage(app: Flask) -> None:
    # prefer Redis storage in production when REDIS_URL is set
    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        return
    try:
        redis_client = redis_lib.from_url(redis_url)
        redis_client.ping()
        app.config["RATELIMIT_STORAGE_URI"] = redis_url
        logger.info("Using Redis at %s for rate limiting", redis_url)
    except (redis_lib.RedisError, ValueError):
        logger.exception("Failed to connect to Redis, falling back to in-memory limiter")


def create_app(scanner: Optional[Scanner] = None,
               orchestrator: Optional[JobOrchestrator] = None,
               **overrides) -> Flask:
    """
    Build the API application.

    Without arguments the scanner uses the SQLite repository from db.py and
    the orchestrator runs it on the configured worker pool. Tests pass their
    own scanner/orchestrator and config overrides (e.g. TESTING=True).
    """
    logging.basicConfig(level=config.LOG_LEVEL)

    app = Flask(__name__)
    app.config.update(
        API_KEY=config.API_KEY,
        REDIS_URL=config.REDIS_URL,
        STREAM_HEARTBEAT_SECONDS=STREAM_HEARTBEAT_SECONDS,
    )
    app.config.update(overrides)
    if app.config.get("TESTING"):
        app.config.setdefault("RATELIMIT_ENABLED", False)

    if scanner is None:
        init_db()
        scanner = Scanner(SqlRepository())
    if orchestrator is None:
        orchestrator = JobOrchestrator(scanner.analyze)
    if app.config["API_KEY"]:
        logger.info("API key enabled")

    _configure_rate_limit_storage(app)
    limiter.init_app(app)

    app.extensions["linkscan"] = {"scanner": scanner, "orchestrator": orchestrator}
    app.register_blueprint(bp)
    app.register_error_handler(HTTPException, _http_error)
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=config.PORT, debug=False, threaded=True)
