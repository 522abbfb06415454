"""Shared Flask extension objects.

Feature modules import `db` and `limiter` from here (never from app.py) so the
models and blueprints can be imported without building the application.
"""

from flask import current_app, request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


# Storage comes from RATELIMIT_STORAGE_URI (memory:// unless configured).
limiter = Limiter(
    get_client_ip,
    default_limits=["1000 per day", "200 per hour"],
)


def services() -> dict:
    """Per-app collaborators (cache, ledger, workflow, ...) built by create_app()."""
    return current_app.extensions["employnet"]
