from __future__ import annotations

import logging
from pathlib import Path

from flask import Flask
from dotenv import load_dotenv

from .config import Config
from .extensions import csrf, db, login_manager
from .db_utils import ensure_database_schema


BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    configure_logging(app)
    register_extensions(app)
    register_blueprints(app)

    with app.app_context():
        ensure_database_schema()

    from .jobs.dispatch import init_job_runner

    init_job_runner(app)
    return app


def configure_logging(app: Flask) -> None:
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    app.logger.setLevel(level)

    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")
        )
        package_logger.addHandler(handler)


def register_extensions(app: Flask) -> None:
    db.init_app(app)
    login_manager.init_app(app)
    login_manager.login_view = "auth.login"
    login_manager.login_message_category = "info"
    csrf.init_app(app)


def register_blueprints(app: Flask) -> None:
    from .auth import bp as auth_bp
    from .jobs import bp as jobs_bp
    from .main import bp as main_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)
    app.register_blueprint(jobs_bp)
