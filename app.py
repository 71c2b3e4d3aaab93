import os
import sys
import logging
import uuid

from flask import Flask, request, jsonify, g, session
from flask_wtf.csrf import CSRFProtect, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

import models
from models import init_db, safe_log_event
from analyses import record_analysis
from reconcile import reconcile
from rest_store import RestStore, BackendError
from selections import (
    PersistenceError, SelectionViewCache, record_selection, record_selections,
    list_active_selections, owner_for, is_asset_configured,
)
from session_identity import SessionIdentity, CookieStorage, COOKIE_MAX_AGE
from signals import user_signed_in
from worker import ReconcileWorker

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected backend failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, (PersistenceError, BackendError)):
                sentry_sdk.add_breadcrumb(
                    category="backend",
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'assetlink-dev-key')
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'assetlink-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: trust one X-Forwarded-For hop so the limiter
# and logs see the client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: clients fetch a token from /api/csrf-token and send it
# as the X-CSRFToken header on every POST.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: in-memory, per process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_WRITE = os.environ.get("RATE_LIMIT_WRITE", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Store, reconciliation worker, read cache
# ---------------------------------------------------------------------------
BACKEND = os.environ.get("ASSETLINK_BACKEND", "sqlite").lower()
RECONCILE_INLINE = os.environ.get("RECONCILE_INLINE", "false").lower() == "true"
SELECTION_CACHE_TTL = float(os.environ.get("SELECTION_CACHE_TTL", "30"))
IDENTITY_COOKIE_SECURE = os.environ.get("IDENTITY_COOKIE_SECURE", "false").lower() == "true"


def build_store(backend=BACKEND):
    """The models module for sqlite, or a RestStore for a PostgREST backend."""
    if backend == "rest":
        return RestStore()
    if backend != "sqlite":
        logger.warning("Unknown ASSETLINK_BACKEND %r, falling back to sqlite", backend)
    return models


store = build_store()
reconcile_worker = ReconcileWorker(store, inline=RECONCILE_INLINE)
selection_cache = SelectionViewCache(ttl=SELECTION_CACHE_TTL)


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    """Set request ID and the cookie-backed session identity on every request."""
    g.request_id = _generate_request_id()
    g.identity = SessionIdentity(CookieStorage(max_age=COOKIE_MAX_AGE, secure=IDENTITY_COOKIE_SECURE))


@app.after_request
def _after_request(response):
    """Flush identity cookie writes made during the request."""
    identity = getattr(g, "identity", None)
    if identity is not None:
        identity.storage.apply(response)
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


def _current_user_id():
    return session.get("user_id")


def _persistence_failed(e, action):
    """503 response for a failed backend call; the client may retry."""
    logger.error("[%s] %s failed: %s (cause: %r)", g.request_id, action, e, e.cause)
    safe_log_event(
        "persistence_error",
        user_id=_current_user_id(),
        session_id=g.identity.peek_session_id(),
        metadata={"action": action, "error": str(e), "request_id": g.request_id},
    )
    return jsonify({
        "error": str(e),
        "retry": True,
        "request_id": g.request_id,
    }), 503


def _empty_view():
    return {
        "selections": [],
        "count": 0,
        "raw_count": 0,
        "total_monthly_revenue": 0,
        "total_setup_cost": 0,
    }


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    return jsonify({
        "status": "ok",
        "backend": "rest" if isinstance(store, RestStore) else "sqlite",
        "worker_running": reconcile_worker.is_running() or reconcile_worker.inline,
    })


@app.route("/api/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@app.route("/api/analyses", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
def create_analysis():
    """Save a property analysis and make it the active analysis.

    Accepts JSON: {"property_address": "...", "analysis_results": {...}}
    """
    data = request.get_json(silent=True) or {}
    try:
        record = record_analysis(
            store,
            g.identity,
            data.get("property_address"),
            data.get("analysis_results"),
            user_id=_current_user_id(),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except PersistenceError as e:
        return _persistence_failed(e, "record_analysis")

    selection_cache.invalidate(user_id=record.user_id, session_id=record.session_id)
    safe_log_event(
        "analysis_recorded",
        user_id=record.user_id,
        session_id=record.session_id,
        metadata={"analysis_id": record.id, "request_id": g.request_id},
    )
    return jsonify(record.to_dict()), 201


@app.route("/api/selections", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
def create_selection():
    """Record one asset selection.

    Accepts JSON: {"asset_type", "asset_data", "monthly_revenue",
    "setup_cost", "roi_months", "analysis_id"}
    """
    data = request.get_json(silent=True) or {}
    user_id = _current_user_id()
    try:
        selection_id = record_selection(
            store,
            g.identity,
            data.get("asset_type"),
            data.get("asset_data"),
            data.get("monthly_revenue"),
            setup_cost=data.get("setup_cost", 0),
            roi_months=data.get("roi_months"),
            analysis_id=data.get("analysis_id"),
            user_id=user_id,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except PersistenceError as e:
        return _persistence_failed(e, "record_selection")

    session_id = None if user_id else g.identity.peek_session_id()
    selection_cache.invalidate(user_id=user_id, session_id=session_id)
    safe_log_event(
        "selection_recorded",
        user_id=user_id,
        session_id=session_id,
        metadata={"asset_type": data.get("asset_type"), "selection_id": selection_id},
    )
    return jsonify({"id": selection_id}), 201


@app.route("/api/selections/batch", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
def create_selections_batch():
    """Record several selections. 201 if all saved, 207 with per-asset results otherwise."""
    data = request.get_json(silent=True) or {}
    assets = data.get("assets")
    if not isinstance(assets, list) or not assets:
        return jsonify({"error": "assets must be a non-empty list"}), 400

    user_id = _current_user_id()
    results = record_selections(store, g.identity, assets, user_id=user_id)
    saved = [r for r in results if "id" in r]
    session_id = None if user_id else g.identity.peek_session_id()
    if saved:
        selection_cache.invalidate(user_id=user_id, session_id=session_id)
    if len(saved) < len(results):
        logger.warning("[%s] Partial save: %d of %d selections saved",
                       g.request_id, len(saved), len(results))
    return jsonify({
        "results": results,
        "saved": len(saved),
        "failed": len(results) - len(saved),
    }), 201 if len(saved) == len(results) else 207


@app.route("/api/selections")
def get_selections():
    """Deduplicated selections for the signed-in user or the anonymous session.

    Query: ?analysis_id=<id> narrows to one analysis (falls back to all).
    For signed-in users this also starts a background reconcile the first
    time the (user, session) pair is seen by this process.
    """
    identity = g.identity
    user_id = _current_user_id()
    reconcile_queued = False

    if user_id:
        session_id = identity.peek_session_id()
        if reconcile_worker.needs_reconcile(user_id, session_id):
            future = reconcile_worker.submit(
                user_id,
                session_id=session_id,
                active_analysis_id=identity.get_active_analysis_id(),
            )
            reconcile_queued = not future.done()
        if not identity.get_active_analysis_id():
            known = reconcile_worker.known_analysis_id(user_id)
            if known:
                identity.set_active_analysis_id(known)

    owner = owner_for(identity, user_id)
    if owner is None:
        body = _empty_view()
        body["reconcile_queued"] = False
        return jsonify(body)

    analysis_id = request.args.get("analysis_id") or None
    try:
        view = selection_cache.get(
            owner,
            lambda: list_active_selections(store, owner, analysis_id=analysis_id),
            analysis_id=analysis_id,
        )
    except PersistenceError as e:
        return _persistence_failed(e, "list_active_selections")

    body = view.to_dict()
    body["reconcile_queued"] = reconcile_queued
    return jsonify(body)


@app.route("/api/selections/configured")
def selection_configured():
    """Whether the current owner already selected an asset of ?asset_type=."""
    asset_type = (request.args.get("asset_type") or "").strip()
    if not asset_type:
        return jsonify({"error": "asset_type is required"}), 400

    owner = owner_for(g.identity, _current_user_id())
    if owner is None:
        return jsonify({"asset_type": asset_type, "configured": False})
    try:
        view = selection_cache.get(owner, lambda: list_active_selections(store, owner))
    except PersistenceError as e:
        return _persistence_failed(e, "list_active_selections")
    return jsonify({
        "asset_type": asset_type,
        "configured": is_asset_configured(view.selections, asset_type),
    })


@app.route("/api/auth/signed-in", methods=["POST"])
def auth_signed_in():
    """Authentication event from the host: the browser is now signed in as user_id.

    Accepts JSON: {"user_id": "..."}. Reconciliation runs in the background.
    """
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not isinstance(user_id, str) or not user_id.strip():
        return jsonify({"error": "user_id is required"}), 400
    user_id = user_id.strip()

    session["user_id"] = user_id
    identity = g.identity
    user_signed_in.send(
        app,
        user_id=user_id,
        session_id=identity.peek_session_id(),
        active_analysis_id=identity.get_active_analysis_id(),
    )
    if not identity.get_active_analysis_id():
        known = reconcile_worker.known_analysis_id(user_id)
        if known:
            identity.set_active_analysis_id(known)
    return jsonify({"user_id": user_id, "reconcile": "queued"}), 202


@app.route("/api/auth/signed-out", methods=["POST"])
def auth_signed_out():
    user_id = session.pop("user_id", None)
    if user_id:
        reconcile_worker.forget(user_id)
    return jsonify({"signed_in": False})


@app.route("/api/reconcile", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
def manual_reconcile():
    """Run reconciliation now for the signed-in user and return the summary."""
    user_id = _current_user_id()
    if not user_id:
        return jsonify({"error": "sign in required"}), 401

    summary = reconcile(
        store,
        g.identity,
        user_id,
        known_analysis_id=reconcile_worker.known_analysis_id(user_id),
        trace_id=g.request_id,
    )
    reconcile_worker.record_summary(summary)
    safe_log_event(
        "reconcile_completed" if summary.ok else "reconcile_partial_failure",
        user_id=user_id,
        session_id=summary.session_id,
        metadata=summary.to_dict(),
    )
    return jsonify(summary.to_dict())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({
        "error": "Internal server error",
        "request_id": getattr(g, "request_id", None),
    }), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly). The events
# table lives in SQLite even when selections are stored over REST.
init_db()

if __name__ == "__main__":
    # Development: start the reconciliation worker thread in this process
    reconcile_worker.start()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
elif os.environ.get("START_WORKER") == "1":
    try:
        reconcile_worker.start()
    except Exception:
        logger.exception("Failed to start reconciliation worker via START_WORKER=1")
