"""HMAC-SHA256 signature checks for inbound webhooks.

Each verifier takes the raw request body (bytes, exactly as received) and the
provider's header value(s) and returns True/False. Comparisons are
constant-time. An empty secret never verifies.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time


logger = logging.getLogger(__name__)


def _hmac_sha256(key: bytes, payload: bytes) -> bytes:
    return hmac.new(key, payload, hashlib.sha256).digest()


def _within_tolerance(ts: str, tolerance_seconds: int, now: float | None) -> bool:
    try:
        ts_int = int(ts)
    except (TypeError, ValueError):
        return False
    now = time.time() if now is None else now
    return abs(now - ts_int) <= tolerance_seconds


def verify_mux_signature(secret: str, body: bytes, header: str | None, tolerance_seconds: int = 300, now: float | None = None) -> bool:
    """Mux-Signature: t=<unix ts>,v1=<hex hmac of "<ts>.<body>">"""
    if not secret or not header:
        return False
    parts = {}
    for item in header.split(","):
        k, _, v = item.strip().partition("=")
        parts.setdefault(k, []).append(v)
    ts = (parts.get("t") or [None])[0]
    signatures = parts.get("v1") or []
    if not ts or not signatures:
        logger.warning("Mux signature header is malformed")
        return False
    if not _within_tolerance(ts, tolerance_seconds, now):
        logger.warning("Mux signature timestamp outside tolerance")
        return False

    expected = _hmac_sha256(secret.encode("utf-8"), ts.encode("ascii") + b"." + body).hex()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


def verify_typeform_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Typeform-Signature: sha256=<base64 hmac of the raw body>"""
    if not secret or not header or not header.startswith("sha256="):
        return False
    expected = "sha256=" + base64.b64encode(_hmac_sha256(secret.encode("utf-8"), body)).decode("ascii")
    return hmac.compare_digest(expected, header.strip())


def _identity_secret_bytes(secret: str) -> bytes | None:
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret[len("whsec_"):])
        except (binascii.Error, ValueError):
            logger.error("IDENTITY_WEBHOOK_SECRET is not valid base64")
            return None
    return secret.encode("utf-8")


def verify_identity_signature(
    secret: str,
    body: bytes,
    msg_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """svix-style headers: signature is a space separated list of `v1,<base64 hmac of "<id>.<ts>.<body>">`."""
    if not secret or not msg_id or not timestamp or not signature_header:
        return False
    key = _identity_secret_bytes(secret)
    if not key:
        return False
    if not _within_tolerance(timestamp, tolerance_seconds, now):
        logger.warning("Identity webhook timestamp outside tolerance")
        return False

    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(_hmac_sha256(key, signed)).decode("ascii")
    for candidate in signature_header.split():
        version, _, sig = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(expected, sig):
            return True
    return False


# ---- signing helpers (outbound tests and local tooling) ----
def sign_mux(secret: str, body: bytes, ts: int) -> str:
    return f"t={ts},v1=" + _hmac_sha256(secret.encode("utf-8"), str(ts).encode("ascii") + b"." + body).hex()


def sign_typeform(secret: str, body: bytes) -> str:
    return "sha256=" + base64.b64encode(_hmac_sha256(secret.encode("utf-8"), body)).decode("ascii")


def sign_identity(secret: str, body: bytes, msg_id: str, ts: int) -> str:
    key = _identity_secret_bytes(secret) or b""
    signed = f"{msg_id}.{ts}.".encode("utf-8") + body
    return "v1," + base64.b64encode(_hmac_sha256(key, signed)).decode("ascii")
