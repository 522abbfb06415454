"""Domain error taxonomy and the Result envelope returned by every operation.

Expected failures (bad input, missing rows, state conflicts, low balance) are
raised as AppError subclasses inside an operation and come back to the caller
as a failed Result. Anything else is a bug and propagates.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any

from flask import jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from extensions import db


logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        out = {"code": self.code, "message": self.message}
        if self.details is not None:
            out["details"] = self.details
        return out


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "You are not authorized to perform this action", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(AuthorizationError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409


class AlreadyCompletedError(ConflictError):
    code = "ALREADY_COMPLETED"

    def __init__(self, message: str = "Activity already completed", **kwargs):
        super().__init__(message, **kwargs)


class InsufficientBalanceError(ConflictError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str = "Insufficient points balance", **kwargs):
        super().__init__(message, **kwargs)


@dataclass
class Result:
    success: bool
    data: Any = None
    error: dict | None = None
    status_code: int = 200

    @classmethod
    def ok(cls, data: Any = None) -> "Result":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: AppError) -> "Result":
        return cls(success=False, error=error.to_dict(), status_code=error.status_code)

    @classmethod
    def internal_error(cls) -> "Result":
        return cls(
            success=False,
            error={"code": "INTERNAL_ERROR", "message": GENERIC_ERROR_MESSAGE},
            status_code=500,
        )

    @property
    def message(self) -> str | None:
        return (self.error or {}).get("message")

    def to_dict(self) -> dict:
        out: dict = {"success": self.success}
        if self.success:
            out["data"] = self.data
        else:
            out["error"] = self.error
        return out

    def to_response(self, success_status: int = 200):
        status = success_status if self.success else self.status_code
        return jsonify(self.to_dict()), status


def request_json() -> dict:
    """The request's JSON object body, {} when absent. Arrays and scalars are a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def domain_operation(fn):
    """Run `fn` as one all-or-nothing unit and always hand back a Result.

    AppError rolls the session back and becomes a failed Result. Database
    errors are rolled back, logged and reported generically.
    """

    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> Result:
        try:
            data = fn(*args, **kwargs)
        except AppError as e:
            db.session.rollback()
            logger.warning("%s rejected: %s (%s)", fn.__name__, e.message, e.code)
            return Result.fail(e)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("%s failed with a database error", fn.__name__)
            return Result.internal_error()
        if isinstance(data, Result):
            return data
        return Result.ok(data)

    return wrapper


def register_error_handlers(app) -> None:
    @app.errorhandler(AppError)
    def _handle_app_error(e: AppError):
        return jsonify({"success": False, "error": e.to_dict()}), e.status_code

    @app.errorhandler(404)
    def _handle_not_found(_e):
        return jsonify({"success": False, "error": {"code": "NOT_FOUND", "message": "Not found"}}), 404

    @app.errorhandler(405)
    def _handle_method_not_allowed(_e):
        return jsonify({"success": False, "error": {"code": "METHOD_NOT_ALLOWED", "message": "Method not allowed"}}), 405

    @app.errorhandler(429)
    def _handle_rate_limited(_e):
        return jsonify({"success": False, "error": {"code": "RATE_LIMITED", "message": "Too many requests"}}), 429

    @app.errorhandler(Exception)
    def _handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": {"code": "HTTP_ERROR", "message": e.description}}), e.code
        db.session.rollback()
        logger.exception("Unhandled error: %s", e)
        return jsonify({"success": False, "error": {"code": "INTERNAL_ERROR", "message": GENERIC_ERROR_MESSAGE}}), 500
