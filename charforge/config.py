import logging
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_MAX_CONCURRENT_JOBS = 10

LOGGER = logging.getLogger(__name__)


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'charforge.db'}"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r; using %s.", name, raw, default)
        return default


def parse_job_limit(value: object, default: int = DEFAULT_MAX_CONCURRENT_JOBS) -> int:
    """Coerce a configured job limit into a positive integer.

    Missing, malformed or non-positive values fall back to ``default`` so a bad
    environment variable never disables the gate entirely.
    """

    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        LOGGER.warning(
            "Failed to read max concurrent jobs setting %r; using default of %s.",
            value,
            default,
        )
        return default
    return parsed if parsed > 0 else default


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_TIME_LIMIT = None
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    MAX_CONCURRENT_JOBS_PER_USER = parse_job_limit(
        os.environ.get("MAX_CONCURRENT_JOBS_PER_USER", DEFAULT_MAX_CONCURRENT_JOBS)
    )
    JOB_COUNTER_BACKEND = os.environ.get("JOB_COUNTER_BACKEND", "memory")
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    JOB_WORKERS = int(os.environ.get("JOB_WORKERS", "4"))
    JOBS_EAGER = _env_flag("JOBS_EAGER")
    DEMO_JOB_DURATION = _env_float("DEMO_JOB_DURATION", 2.0)

    LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "mock")
    LLM_MAX_RETRIES = int(os.environ.get("LLM_MAX_RETRIES", "3"))
    LLM_RETRY_DELAY = _env_float("LLM_RETRY_DELAY", 1.0)
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_MAX_TOKENS = int(os.environ.get("OPENAI_MAX_TOKENS", "4096"))
    OPENAI_TEMPERATURE = _env_float("OPENAI_TEMPERATURE", 0.7)
    ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY")
    ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
    ANTHROPIC_MAX_TOKENS = int(os.environ.get("ANTHROPIC_MAX_TOKENS", "4096"))
    ANTHROPIC_TEMPERATURE = _env_float("ANTHROPIC_TEMPERATURE", 0.7)
    TEXT_GENERATOR_MODEL_PATH = os.environ.get("TEXT_GENERATOR_MODEL_PATH")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False
    MAX_CONCURRENT_JOBS_PER_USER = 2
    JOB_COUNTER_BACKEND = "memory"
    JOBS_EAGER = True
    DEMO_JOB_DURATION = 0.0
    LLM_PROVIDER = "mock"
    LLM_RETRY_DELAY = 0.0
