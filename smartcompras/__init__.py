import os
import uuid

import click
from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from smartcompras.config import Config
from smartcompras.core.notifications import NotificationSink
from smartcompras.db import close_db, init_db
from smartcompras.db_migrations import register_db_cli
from smartcompras.observability import (
    bind_request_id,
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config, notification_sink: NotificationSink | None = None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_services(app, notification_sink)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _register_notifications_cli(app)
    _maybe_init_schema(app)

    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Testes criam o schema direto, sem depender de migration externa.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fora de development.")
        return

    with app.app_context():
        init_db()


def _register_services(app: Flask, notification_sink: NotificationSink | None) -> None:
    from smartcompras.application.requisition_service import RequisitionService
    from smartcompras.infrastructure.ledger_store import LedgerStore
    from smartcompras.routes.requisition_routes import SERVICE_EXTENSION_KEY

    store = LedgerStore(
        app.config["DB_PATH"],
        timeout_seconds=float(app.config.get("STORE_TIMEOUT_SECONDS", 5.0)),
    )
    app.extensions[SERVICE_EXTENSION_KEY] = RequisitionService(
        store,
        notification_sink,
        retry_attempts=int(app.config.get("STORE_RETRY_ATTEMPTS", 3)),
        retry_backoff_ms=int(app.config.get("STORE_RETRY_BACKOFF_MS", 200)),
        allocation_epsilon=float(app.config.get("ALLOCATION_EPSILON", 0.01)),
        default_page_size=int(app.config.get("DEFAULT_PAGE_SIZE", 20)),
        max_page_size=int(app.config.get("MAX_PAGE_SIZE", 100)),
    )


def _register_blueprints(app: Flask) -> None:
    from smartcompras.routes.requisition_routes import requisitions_bp

    app.register_blueprint(requisitions_bp)


def _register_notifications_cli(app: Flask) -> None:
    from smartcompras.domain.contracts import ROLE_ADMIN, Actor
    from smartcompras.routes.requisition_routes import SERVICE_EXTENSION_KEY

    @app.cli.command("redeliver-notifications")
    @click.option("--limit", default=100, show_default=True, type=int)
    def redeliver_notifications(limit: int) -> None:
        """Reenvia eventos de status ainda nao entregues."""
        service = app.extensions[SERVICE_EXTENSION_KEY]
        with bind_request_id(f"cli-{uuid.uuid4().hex[:12]}"):
            delivered = service.redeliver_notifications(Actor(user_id=0, role=ROLE_ADMIN), limit=limit)
        click.echo(f"Notificacoes reenviadas: {delivered}.")


def _request_log_fields(request_id: str, **fields) -> dict:
    return {"request_id": request_id, "request_path": request.path, "http_method": request.method, **fields}


def _register_error_handlers(app: Flask) -> None:
    from smartcompras.errors import AppError, SystemError

    @app.before_request
    def _start_request() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _finish_request(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        log = app.logger.error if exc.critical else app.logger.warning
        log(
            "application_error",
            extra=_request_log_fields(
                request_id,
                error_code=exc.code,
                http_status=exc.http_status,
                message_key=exc.message_key,
                details=exc.details,
            ),
            exc_info=exc.critical,
        )
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        request_id = ensure_request_id()
        masked = SystemError(code="unexpected_error", message_key="unexpected_error", details=str(exc))
        app.logger.exception("unexpected_exception", extra=_request_log_fields(request_id, error_code=masked.code))
        return jsonify(masked.to_response_payload(request_id)), masked.http_status


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        return {
            "status": "ok",
            "db": backend,
            "env": os.environ.get("FLASK_ENV", "development"),
            "metrics": metrics_snapshot(),
        }, 200

    @app.route("/metrics")
    def metrics():
        return Response(prometheus_metrics_text(), mimetype="text/plain; version=0.0.4")
