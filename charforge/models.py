from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db, login_manager


JOB_STATUSES = ("queued", "running", "succeeded", "failed", "cancelled")
FINISHED_STATUSES = frozenset({"succeeded", "failed", "cancelled"})


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    job_runs = db.relationship(
        "JobRun",
        backref="owner",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="JobRun.created_at.desc()",
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def tenant_key(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        return f"<User {self.email}>"


@login_manager.user_loader
def load_user(user_id: str) -> Optional["User"]:
    return db.session.get(User, int(user_id))


class JobCounter(db.Model):
    """In-flight job count per tenant, used by the database counter store."""

    __tablename__ = "job_counters"

    tenant_key = db.Column(db.String(255), primary_key=True)
    active = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("active >= 0", name="ck_job_counters_active_non_negative"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<JobCounter {self.tenant_key}={self.active}>"


class JobRun(db.Model):
    __tablename__ = "job_runs"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    kind = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="queued")
    payload = db.Column(db.Text, nullable=True)
    result = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)
    used_fallback = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<JobRun {self.id} {self.kind} ({self.status})>"

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def payload_data(self) -> Dict[str, Any]:
        return _load_json(self.payload)

    @property
    def result_data(self) -> Dict[str, Any]:
        return _load_json(self.result)

    def mark_running(self) -> None:
        self.status = "running"
        self.started_at = datetime.utcnow()

    def mark_succeeded(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.status = "succeeded"
        self.finished_at = datetime.utcnow()
        if result is not None:
            self.used_fallback = bool(result.get("used_fallback", False))
            self.result = json.dumps(result)

    def mark_failed(self, error: str) -> None:
        self.status = "failed"
        self.finished_at = datetime.utcnow()
        self.error = error

    def mark_cancelled(self) -> None:
        self.status = "cancelled"
        self.finished_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "payload": self.payload_data,
            "result": self.result_data,
            "error": self.error,
            "used_fallback": self.used_fallback,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def _load_json(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}
