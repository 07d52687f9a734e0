"""Wiring between HTTP requests, the job runner and persisted job records."""

from __future__ import annotations

import json
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, current_app

from ..config import parse_job_limit
from ..extensions import db
from ..models import JobRun, User
from ..services.admission import AdmissionGate, Rejected
from ..services.background import CharacterBrief, generate_background
from ..services.personality import generate_personality_details
from ..services.counters import StoreUnavailable, build_counter_store
from ..services.job_runner import EnqueueResult, JobRunner

EXTENSION_KEY = "charforge.jobs"

JOB_LABELS = {
    "test_concurrent": "Concurrency demo",
    "generate_background": "Character background",
    "generate_personality_details": "Ideals, bonds and flaws",
}


def init_job_runner(app: Flask) -> JobRunner:
    limit = parse_job_limit(app.config.get("MAX_CONCURRENT_JOBS_PER_USER"))
    app.config["MAX_CONCURRENT_JOBS_PER_USER"] = limit

    backend = app.config.get("JOB_COUNTER_BACKEND", "memory")
    engine = None
    if str(backend).strip().lower() == "database":
        with app.app_context():
            engine = db.engine
    store = build_counter_store(backend, engine=engine, redis_url=app.config.get("REDIS_URL"))

    runner = JobRunner(
        AdmissionGate(store, limit),
        max_workers=app.config.get("JOB_WORKERS", 4),
        eager=bool(app.config.get("JOBS_EAGER")),
    )
    app.extensions[EXTENSION_KEY] = runner
    app.logger.info(
        "Job limits initialized: max_concurrent_jobs_per_user = %s (%s counter store)",
        limit,
        store.name,
    )
    return runner


def get_job_runner() -> JobRunner:
    return current_app.extensions[EXTENSION_KEY]


def run_concurrency_demo(payload: Dict[str, Any]) -> Dict[str, Any]:
    duration = float(current_app.config.get("DEMO_JOB_DURATION", 2.0))
    user_id = payload.get("user_id")
    current_app.logger.info("Starting job for user %s", user_id)
    time.sleep(duration)
    current_app.logger.info("Completed job for user %s", user_id)
    return {"slept_seconds": duration}


def run_background_generation(payload: Dict[str, Any]) -> Dict[str, Any]:
    brief = CharacterBrief.from_mapping(payload.get("character") or {})
    result = generate_background(brief)
    current_app.logger.info(
        "Generated background for %s (fallback=%s)", brief.name, result.used_fallback
    )
    return result.to_dict()


def run_personality_details(payload: Dict[str, Any]) -> Dict[str, Any]:
    brief = CharacterBrief.from_mapping(payload.get("character") or {})
    result = generate_personality_details(
        brief,
        payload.get("background") or "",
        payload.get("personality_traits") or [],
    )
    current_app.logger.info(
        "Generated personality details for %s (fallback=%s)", brief.name, result.used_fallback
    )
    return result.to_dict()


JOB_FUNCTIONS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "test_concurrent": run_concurrency_demo,
    "generate_background": run_background_generation,
    "generate_personality_details": run_personality_details,
}


def dispatch_job(user: User, kind: str, payload: Dict[str, Any]) -> Tuple[EnqueueResult, Optional[JobRun]]:
    """Record and enqueue a job of ``kind`` for ``user``.

    The job row is committed before admission so a worker can load it. When
    admission is refused, or the counter store is down, the row is removed
    again; only admitted jobs leave a record behind.
    """

    if kind not in JOB_FUNCTIONS:
        raise KeyError(f"Unknown job kind: {kind}")

    run = JobRun(owner_id=user.id, kind=kind, status="queued", payload=json.dumps(payload))
    db.session.add(run)
    db.session.commit()
    run_id = run.id

    app = current_app._get_current_object()
    try:
        outcome = get_job_runner().enqueue(
            user.tenant_key, _run_tracked, app, run_id, JOB_FUNCTIONS[kind], payload
        )
    except StoreUnavailable:
        _discard(run_id)
        raise

    if isinstance(outcome, Rejected):
        _discard(run_id)
        return outcome, None

    outcome.future.add_done_callback(_mark_cancelled(app, run_id))
    return outcome, db.session.get(JobRun, run_id, populate_existing=True)


def _run_tracked(
    app: Flask,
    run_id: int,
    func: Callable[[Dict[str, Any]], Dict[str, Any]],
    payload: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    with app.app_context():
        run = db.session.get(JobRun, run_id)
        if run is None:
            app.logger.warning("Job %s disappeared before it could start", run_id)
            return None
        run.mark_running()
        db.session.commit()

        try:
            result = func(payload)
        except Exception as exc:
            db.session.rollback()
            run = db.session.get(JobRun, run_id)
            run.mark_failed(str(exc))
            db.session.commit()
            raise

        run.mark_succeeded(result)
        db.session.commit()
        return result


def _mark_cancelled(app: Flask, run_id: int) -> Callable[[Future], None]:
    def callback(future: Future) -> None:
        if not future.cancelled():
            return
        with app.app_context():
            run = db.session.get(JobRun, run_id)
            if run is not None and not run.is_finished:
                run.mark_cancelled()
                db.session.commit()

    return callback


def _discard(run_id: int) -> None:
    db.session.rollback()
    run = db.session.get(JobRun, run_id)
    if run is not None:
        db.session.delete(run)
        db.session.commit()
