from __future__ import annotations

import json

from flask import abort, current_app, jsonify, render_template, request
from flask_login import current_user, login_required

from ..extensions import db
from ..models import JobRun
from ..services.admission import Rejected
from ..services.counters import StoreUnavailable
from . import bp
from .dispatch import JOB_LABELS, dispatch_job, get_job_runner
from .forms import CharacterBriefForm, DemoJobForm, PersonalityDetailsForm
from .responses import (
    htmx_config,
    render_enqueued,
    render_error,
    render_invalid,
    render_rejection,
    requested_format,
)


@bp.app_context_processor
def inject_htmx_config():
    return {"htmx_config": json.dumps(htmx_config())}


@bp.app_errorhandler(StoreUnavailable)
def handle_store_unavailable(exc: StoreUnavailable):
    current_app.logger.exception("Job counter store unavailable: %s", exc)
    return render_error(
        "Background jobs are unavailable right now. Please try again shortly.",
        status=503,
        code="job_store_unavailable",
        title="Job service unavailable",
    )


@bp.route("/", methods=["GET"])
@login_required
def index():
    gate = get_job_runner().gate
    runs = (
        JobRun.query.filter_by(owner_id=current_user.id)
        .order_by(JobRun.created_at.desc(), JobRun.id.desc())
        .limit(25)
        .all()
    )
    return render_template(
        "jobs/index.html",
        runs=runs,
        labels=JOB_LABELS,
        limit=gate.limit,
        active=gate.active_count(current_user.tenant_key),
        demo_form=DemoJobForm(prefix="demo"),
        brief_form=CharacterBriefForm(prefix="brief"),
    )


@bp.route("/test-concurrent", methods=["POST"])
@login_required
def test_concurrent():
    form = DemoJobForm(prefix="demo")
    if not form.validate_on_submit():
        return render_invalid(form.errors)

    outcome, run = dispatch_job(current_user, "test_concurrent", {"user_id": current_user.id})
    if isinstance(outcome, Rejected):
        return render_rejection(outcome)

    return render_enqueued(run, f"Concurrency demo job enqueued for user {current_user.id}")


@bp.route("/background", methods=["POST"])
@login_required
def generate_background():
    form = CharacterBriefForm(prefix="" if request.is_json else "brief")
    if not form.validate_on_submit():
        return render_invalid(form.errors)

    outcome, run = dispatch_job(
        current_user,
        "generate_background",
        {"user_id": current_user.id, "character": form.brief_payload()},
    )
    if isinstance(outcome, Rejected):
        return render_rejection(outcome)

    return render_enqueued(run, f"Background generation started for {form.name.data.strip()}.")


@bp.route("/<int:job_id>/personality-details", methods=["POST"])
@login_required
def generate_personality_details(job_id: int):
    source = _owned_run(job_id)
    form = PersonalityDetailsForm(prefix="details")
    if not form.validate_on_submit():
        return render_invalid(form.errors)

    result = source.result_data
    has_background = source.kind == "generate_background" and source.status == "succeeded"
    if not has_background or not result.get("background"):
        return render_error(
            "Generate a background before drafting ideals, bonds and flaws.",
            status=409,
            code="background_required",
            title="Background required",
        )

    character = source.payload_data.get("character") or {}
    outcome, run = dispatch_job(
        current_user,
        "generate_personality_details",
        {
            "user_id": current_user.id,
            "source_job_id": source.id,
            "character": character,
            "background": result["background"],
            "personality_traits": result.get("personality_traits") or [],
        },
    )
    if isinstance(outcome, Rejected):
        return render_rejection(outcome)

    name = character.get("name") or "your character"
    return render_enqueued(run, f"Personality details requested for {name}.")


@bp.route("/<int:job_id>", methods=["GET"])
@login_required
def detail(job_id: int):
    run = _owned_run(job_id)

    if requested_format() == "json":
        return jsonify({"job": run.to_dict()})
    return render_template(
        "jobs/detail.html",
        run=run,
        labels=JOB_LABELS,
        details_form=PersonalityDetailsForm(prefix="details"),
    )


def _owned_run(job_id: int) -> JobRun:
    run = db.get_or_404(JobRun, job_id)
    if run.owner_id != current_user.id:
        abort(403)
    return run
