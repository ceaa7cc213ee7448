from __future__ import annotations

from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_jwt_extended import JWTManager
from sqlalchemy.exc import OperationalError, ProgrammingError

from .audit import audit_bp
from .auth import auth_bp
from .bootstrap import bootstrap_defaults
from .common.errors import error_payload, register_error_handlers
from .config import Config
from .extensions import cors, db, jwt, migrate
from .fs import fs_bp
from .shares import shares_bp
from .users import users_bp


load_dotenv()


def _register_jwt_handlers(jwt_manager: JWTManager) -> None:
    @jwt_manager.unauthorized_loader
    def unauthorized(reason: str):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("UNAUTHENTICATED", "Missing or invalid authentication token.", {"reason": reason})), 401

    @jwt_manager.invalid_token_loader
    def invalid_token(reason: str):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("INVALID_TOKEN", "Invalid token.", {"reason": reason})), 401

    @jwt_manager.expired_token_loader
    def expired_token(jwt_header, jwt_payload):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("TOKEN_EXPIRED", "Token has expired.")), 401


def create_app(config_override: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)

    app.logger.setLevel(str(app.config.get("LOG_LEVEL") or "INFO").upper())
    Path(app.config["STORAGE_ROOT"]).mkdir(parents=True, exist_ok=True)

    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    _register_jwt_handlers(jwt)
    cors.init_app(app, resources={r"/*": {"origins": app.config["FRONTEND_ORIGINS"]}})

    app.register_blueprint(auth_bp)
    app.register_blueprint(fs_bp)
    app.register_blueprint(shares_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(audit_bp)

    @app.get("/health")
    def healthcheck():
        return {"status": "ok"}

    register_error_handlers(app)

    with app.app_context():
        try:
            bootstrap_defaults(commit=True)
        except (OperationalError, ProgrammingError):
            # Tables are not there yet (fresh database before migrations).
            db.session.rollback()

    return app
