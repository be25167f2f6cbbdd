# FILE: dealsign/__init__.py
# DESCRIPTION: Initializes the signature Flask app and registers routes and error handlers.

from functools import partial

import redis
from flask import Flask

from dealsign.api.errors import register_error_handlers
from dealsign.api.routes_api_keys import api_keys_bp
from dealsign.api.routes_signatures import pdf_bp, signatures_bp
from dealsign.config import load_settings
from dealsign.core.guard import RateLimitGuard
from dealsign.db.models import Base, utcnow
from dealsign.db.session import check_connection, configure_engine, remove_session
from dealsign.integrations.documents import HttpDocumentSource
from dealsign.integrations.notifications import EmailNotifier, NotificationDispatcher, send_webhook_if_enabled
from dealsign.log_utils.logging_config import configure_logging

# Configure logging once at module level
logger = configure_logging(
    name="dealsign",
    logfile="dealsign.log",
    level=None  # Uses LOG_LEVEL from environment if set
)


def _build_services(config: dict, services: dict) -> dict:
    """Default collaborators; anything passed in `services` wins."""
    clock = services.get("clock") or utcnow

    if "rate_guard" not in services:
        redis_client = None
        if config.get("RATE_LIMIT_REDIS_URL"):
            redis_client = redis.Redis.from_url(config["RATE_LIMIT_REDIS_URL"])
            logger.info("Rate limiting backed by Redis")
        services["rate_guard"] = RateLimitGuard.from_config(config, redis_client=redis_client)

    services.setdefault("documents", HttpDocumentSource(
        config["DOCUMENT_SERVICE_URL"], token=config.get("DOCUMENT_SERVICE_TOKEN", "")
    ))
    services.setdefault("notifier", EmailNotifier(
        config["EMAIL_SERVICE_URL"],
        token=config.get("EMAIL_SERVICE_TOKEN", ""),
        public_base_url=config["PUBLIC_BASE_URL"],
    ))
    services.setdefault("dispatcher", NotificationDispatcher(run_async=config["NOTIFICATIONS_ASYNC"]))
    services.setdefault("webhook", partial(
        send_webhook_if_enabled,
        webhook_url=config["OPS_WEBHOOK_URL"],
        disabled=config["DISABLE_WEBHOOKS"],
    ))
    services["clock"] = clock
    return services


def create_app(overrides: dict = None, services: dict = None):
    """Create and configure the signature service application."""
    app = Flask(__name__)
    app.config.update(load_settings())
    app.config.update(overrides or {})

    engine = configure_engine(app.config["DATABASE_URL"])
    if app.config.get("CREATE_TABLES") or app.config["DATABASE_URL"].startswith("sqlite"):
        Base.metadata.create_all(bind=engine)

    app.extensions["dealsign"] = _build_services(app.config, dict(services or {}))

    # Register blueprints
    app.register_blueprint(signatures_bp)
    app.register_blueprint(pdf_bp)
    app.register_blueprint(api_keys_bp)
    register_error_handlers(app)

    app.teardown_appcontext(remove_session)

    # Health check endpoint
    @app.route("/health")
    def health():
        if not check_connection():
            return {"status": "degraded", "database": "unreachable"}, 503
        return {"status": "ok"}, 200

    logger.info("Signature service initialized successfully")
    return app
