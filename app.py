import logging
import os
from datetime import datetime

import redis
from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

from cache import build_cache
from config import DEV_SECRET_KEY, Config, is_production
from email_sender import EmailSender
from errors import register_error_handlers
from extensions import db, limiter
from identity import IdentityProvider
from ledger import PointsLedger
from notificator import NotificationDispatcher, RealtimePublisher
from stats import StatsQueries
from verification import VerificationWorkflow

# Models must be imported before create_all().
import models_activities  # noqa: F401
import models_notifications  # noqa: F401
import models_payouts  # noqa: F401
import models_users  # noqa: F401
import models_verification  # noqa: F401

from activities_api import activities_api
from admin_activities import admin_activities
from admin_dashboard import admin_dashboard
from admin_payouts import admin_payouts
from admin_verification import admin_verification
from bank_accounts import bank_accounts_api
from notifications_api import notifications_api
from payouts_api import payouts_api
from rewards_api import rewards_api
from verification_api import verification_api
from webhooks import webhooks_api


logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    root.setLevel(getattr(logging, level, logging.INFO))


def create_app(overrides=None, collaborators=None):
    """Build the application.

    `overrides` are config values applied on top of Config. `collaborators`
    may replace "cache", "publisher" and "mailer" (tests inject in-memory or
    recording versions).
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    if is_production() and app.config["SECRET_KEY"] == DEV_SECRET_KEY:
        raise RuntimeError("SECRET_KEY must be set in production")

    # Render (and most PaaS) runs behind a single reverse proxy hop.
    if is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    CORS(app, origins=app.config["CORS_ORIGINS"])
    limiter.init_app(app)
    register_error_handlers(app)

    collaborators = collaborators or {}
    cache = collaborators.get("cache") or build_cache(app.config.get("REDIS_URL"))
    publisher = collaborators.get("publisher") or RealtimePublisher.from_url(app.config.get("REDIS_URL"))
    mailer = collaborators.get("mailer") or EmailSender.from_config(app.config)
    dispatcher = NotificationDispatcher(publisher)

    app.extensions["employnet"] = {
        "cache": cache,
        "publisher": publisher,
        "mailer": mailer,
        "dispatcher": dispatcher,
        "identity": IdentityProvider(app.config["SECRET_KEY"], int(app.config["IDENTITY_TOKEN_MAX_AGE_SECONDS"])),
        "ledger": PointsLedger(cache, dispatcher),
        "workflow": VerificationWorkflow(cache, dispatcher, mailer),
        "stats": StatsQueries(cache, int(app.config["CACHE_TTL_SHORT"]), int(app.config["CACHE_TTL_LONG"])),
    }

    for bp in (
        activities_api,
        payouts_api,
        rewards_api,
        bank_accounts_api,
        notifications_api,
        verification_api,
        admin_activities,
        admin_payouts,
        admin_verification,
        admin_dashboard,
        webhooks_api,
    ):
        app.register_blueprint(bp)

    @app.get("/api/health")
    def health_check():
        checks = {}
        try:
            db.session.execute(text("SELECT 1"))
            checks["database"] = "connected"
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Health check: database unavailable: %s", e)
            checks["database"] = "unavailable"
        try:
            checks["cache"] = "connected" if cache.ping() else "unavailable"
        except redis.RedisError as e:
            logger.error("Health check: cache unavailable: %s", e)
            checks["cache"] = "unavailable"

        healthy = all(v == "connected" for v in checks.values())
        body = {
            "success": healthy,
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "version": APP_VERSION,
            **checks,
        }
        return jsonify(body), (200 if healthy else 503)

    with app.app_context():
        db.create_all()
        logger.info("Employ-Net app ready (db=%s)", db.engine.dialect.name)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_ENV", "development") == "development"
    app = create_app()

    print("=" * 60)
    print("Employ-Net API")
    print("=" * 60)
    print(f"Health: http://localhost:{port}/api/health")
    print(f"Activities: http://localhost:{port}/api/activities")
    print(f"Admin payouts: http://localhost:{port}/api/admin/payouts")
    print("=" * 60)

    app.run(host="0.0.0.0", port=port, debug=debug)
