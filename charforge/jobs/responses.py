"""Format-specific renderings of job admission outcomes.

Route handlers decide *what* happened (admitted, rejected, store down) and
hand the outcome to one of the ``render_*`` helpers, which pick the output
format for the current request: a redirect with a flash message (an error
page when the store is down), a fragment aimed at the page's ``flash``
region, or JSON.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from flask import (
    Response,
    flash,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    url_for,
)

from ..models import JobRun
from ..services.admission import Rejected

FORMATS = ("html", "fragment", "json")
TURBO_STREAM_MIMETYPE = "text/vnd.turbo-stream.html"
FLASH_TARGET = "flash"

# Statuses sent with a flash fragment. htmx 2 does not swap 4xx/5xx bodies
# unless its responseHandling config lists them.
FRAGMENT_ERROR_STATUSES = (400, 409, 429, 503)


def requested_format() -> str:
    explicit = (request.args.get("format") or "").strip().lower()
    if explicit in FORMATS:
        return explicit

    if request.headers.get("HX-Request", "").lower() == "true" or _wants_turbo_stream():
        return "fragment"

    accept = request.accept_mimetypes
    if request.is_json or (accept.accept_json and not accept.accept_html):
        return "json"
    return "html"


def htmx_config() -> Dict[str, Any]:
    codes = "|".join(str(status) for status in FRAGMENT_ERROR_STATUSES)
    return {
        "responseHandling": [
            {"code": "204", "swap": False},
            {"code": "[23]..", "swap": True},
            {"code": f"^({codes})$", "swap": True, "error": False},
            {"code": "[45]..", "swap": False, "error": True},
            {"code": "...", "swap": False},
        ]
    }


def render_rejection(decision: Rejected) -> Response:
    fmt = requested_format()
    if fmt == "json":
        response = jsonify(
            {
                "error": decision.error,
                "code": decision.error_code,
                "message": decision.message,
                "limit": decision.limit,
            }
        )
        response.status_code = decision.status
        return response

    if fmt == "fragment":
        return _flash_fragment([("danger", decision.message)], status=decision.status)

    flash(decision.message, "danger")
    return redirect(_redirect_back(), code=303)


def render_enqueued(run: JobRun, message: str) -> Response:
    fmt = requested_format()
    if fmt == "json":
        response = jsonify({"message": message, "job": run.to_dict()})
        response.status_code = 202
        return response

    if fmt == "fragment":
        body = render_template(
            "jobs/_enqueued.html",
            messages=[("success", message)],
            run=run,
        )
        return _fragment_response(body, status=202)

    flash(message, "success")
    return redirect(url_for("jobs.index"), code=303)


def render_error(message: str, *, status: int, code: str, title: str) -> Response:
    fmt = requested_format()
    if fmt == "json":
        response = jsonify({"error": title, "code": code, "message": message})
        response.status_code = status
        return response
    if fmt == "fragment":
        return _flash_fragment([("danger", message)], status=status)

    body = render_template("shared/error.html", title=title, message=message, status=status)
    return make_response(body, status)


def render_invalid(errors: Dict[str, List[str]]) -> Response:
    messages = [error for field_errors in errors.values() for error in field_errors]
    fmt = requested_format()
    if fmt == "json":
        response = jsonify({"error": "Invalid job request", "code": "invalid_request", "errors": errors})
        response.status_code = 400
        return response
    if fmt == "fragment":
        return _flash_fragment([("danger", message) for message in messages], status=400)

    for message in messages:
        flash(message, "danger")
    return redirect(_redirect_back(), code=303)


def _flash_fragment(messages: List[Tuple[str, str]], *, status: int) -> Response:
    body = render_template("shared/_flash.html", messages=messages)
    return _fragment_response(body, status=status)


def _fragment_response(body: str, *, status: int) -> Response:
    if _wants_turbo_stream():
        stream = render_template(
            "shared/_turbo_stream.html",
            action="update",
            target=FLASH_TARGET,
            content=body,
        )
        response = make_response(stream, status)
        response.mimetype = TURBO_STREAM_MIMETYPE
        return response

    response = make_response(body, status)
    response.headers["HX-Retarget"] = f"#{FLASH_TARGET}"
    response.headers["HX-Reswap"] = "innerHTML"
    return response


def _wants_turbo_stream() -> bool:
    return TURBO_STREAM_MIMETYPE in (request.headers.get("Accept") or "")


def _redirect_back(fallback: Optional[str] = None) -> str:
    target = fallback or url_for("jobs.index")
    referrer = request.referrer
    if not referrer:
        return target
    parsed = urlparse(referrer)
    if parsed.netloc and parsed.netloc != request.host:
        return target
    return referrer
