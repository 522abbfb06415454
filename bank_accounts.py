"""Bank account (payout destination) API.

One account per user (Australian format: BSB + account number). A payout
cannot be requested until one exists.

Routes:
- GET    /api/bank-account
- POST   /api/bank-account
- PUT    /api/bank-account
- DELETE /api/bank-account
"""

import logging
import re

from flask import Blueprint, g, jsonify
from sqlalchemy.exc import IntegrityError

from errors import ConflictError, NotFoundError, ValidationError, domain_operation, request_json
from extensions import db
from identity import require_auth
from models_users import ACCOUNT_TYPES, BankAccount, User


logger = logging.getLogger(__name__)

bank_accounts_api = Blueprint("bank_accounts_api", __name__)

_DIGITS_RE = re.compile(r"^\d+$")
_HOLDER_RE = re.compile(r"^[a-zA-Z\s'-]+$")

# snake_case field -> accepted camelCase alias
_FIELDS = {
    "bank_name": "bankName",
    "account_number": "accountNumber",
    "bsb": "bsb",
    "account_type": "accountType",
    "account_holder_name": "accountHolderName",
}


def validate_bank_account(data: dict) -> dict:
    """Return cleaned fields or raise ValidationError with per-field details."""
    raw = {}
    for field, alias in _FIELDS.items():
        value = data.get(field, data.get(alias))
        raw[field] = value.strip() if isinstance(value, str) else ""

    errors = {}
    bank_name = raw["bank_name"]
    if len(bank_name) < 2:
        errors["bank_name"] = "Bank name must be at least 2 characters"
    elif len(bank_name) > 100:
        errors["bank_name"] = "Bank name must be less than 100 characters"

    number = raw["account_number"]
    if not _DIGITS_RE.match(number):
        errors["account_number"] = "Account number must contain only digits"
    elif len(number) < 6:
        errors["account_number"] = "Account number must be at least 6 digits"
    elif len(number) > 9:
        errors["account_number"] = "Account number must be at most 9 digits"

    bsb = raw["bsb"]
    if len(bsb) != 6:
        errors["bsb"] = "BSB must be exactly 6 digits"
    elif not _DIGITS_RE.match(bsb):
        errors["bsb"] = "BSB must contain only numbers"

    if raw["account_type"] not in ACCOUNT_TYPES:
        errors["account_type"] = "Account type must be checking or savings"

    holder = raw["account_holder_name"]
    if len(holder) < 2:
        errors["account_holder_name"] = "Account holder name must be at least 2 characters"
    elif len(holder) > 100:
        errors["account_holder_name"] = "Account holder name must be less than 100 characters"
    elif not _HOLDER_RE.match(holder):
        errors["account_holder_name"] = (
            "Account holder name can only contain letters, spaces, hyphens, and apostrophes"
        )

    if errors:
        raise ValidationError("Invalid bank account details", details=errors)
    return raw


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")
    return user


def _account_for(user_id: int):
    return db.session.execute(db.select(BankAccount).filter_by(user_id=user_id)).scalar_one_or_none()


@domain_operation
def add_bank_account(user_id: int, data: dict):
    fields = validate_bank_account(data or {})
    user = _get_user(user_id)
    if _account_for(user.id) is not None:
        raise ConflictError("User already has a bank account")

    account = BankAccount(user_id=user.id, **fields)
    db.session.add(account)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("User already has a bank account")
    logger.info("Bank account added for user %s", user.id)
    return account.to_dict()


@domain_operation
def get_bank_account(user_id: int):
    user = _get_user(user_id)
    account = _account_for(user.id)
    return account.to_dict() if account else None


@domain_operation
def update_bank_account(user_id: int, data: dict):
    fields = validate_bank_account(data or {})
    user = _get_user(user_id)
    account = _account_for(user.id)
    if account is None:
        raise NotFoundError("Bank account")
    for k, v in fields.items():
        setattr(account, k, v)
    db.session.commit()
    logger.info("Bank account updated for user %s", user.id)
    return account.to_dict()


@domain_operation
def delete_bank_account(user_id: int):
    user = _get_user(user_id)
    account = _account_for(user.id)
    if account is None:
        raise NotFoundError("Bank account")
    db.session.delete(account)
    db.session.commit()
    logger.info("Bank account deleted for user %s", user.id)
    return None


@bank_accounts_api.get("/api/bank-account")
@require_auth
def api_get_bank_account():
    return get_bank_account(g.identity.user_id).to_response()


@bank_accounts_api.post("/api/bank-account")
@require_auth
def api_add_bank_account():
    data = request_json()
    return add_bank_account(g.identity.user_id, data).to_response(201)


@bank_accounts_api.put("/api/bank-account")
@require_auth
def api_update_bank_account():
    data = request_json()
    return update_bank_account(g.identity.user_id, data).to_response()


@bank_accounts_api.delete("/api/bank-account")
@require_auth
def api_delete_bank_account():
    res = delete_bank_account(g.identity.user_id)
    if not res.success:
        return res.to_response()
    return jsonify({"success": True})
