from flask import current_app, jsonify, redirect, render_template, url_for
from flask_login import current_user

from ..jobs.dispatch import get_job_runner
from ..services.counters import StoreUnavailable
from . import bp


@bp.route("/")
def index():
    if current_user.is_authenticated:
        return redirect(url_for("jobs.index"))
    return render_template("main/landing.html", limit=current_app.config["MAX_CONCURRENT_JOBS_PER_USER"])


@bp.route("/health")
def health():
    store = get_job_runner().gate.store
    payload = {"status": "ok", "counter_store": {"backend": store.name, "status": "up"}}
    try:
        store.ping()
    except StoreUnavailable as exc:
        current_app.logger.error("Health check: counter store down: %s", exc)
        payload["status"] = "degraded"
        payload["counter_store"].update(status="down", error=str(exc))
        return jsonify(payload), 503
    return jsonify(payload)
