"""Field encryption at rest and signed mandate-setup state tokens."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from clubpay.config import settings
from clubpay.errors import StateTokenError

logger = logging.getLogger(__name__)

STATE_TOKEN_PURPOSE = "mandate_setup"
_STATE_CLAIMS = ("user_id", "club_id", "provider", "customer_id")


def _fernet() -> Fernet:
    key = settings.payment_encryption_key
    if not key:
        raise RuntimeError("PAYMENT_ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key)
    except ValueError as exc:
        raise RuntimeError("Invalid PAYMENT_ENCRYPTION_KEY") from exc


def encrypt_value(value: str) -> str:
    return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_value(value: str) -> str:
    try:
        return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise RuntimeError("Unable to decrypt stored payment data") from exc


def _signing_key() -> str:
    if not settings.secret_key:
        raise RuntimeError("SECRET_KEY is not configured")
    return settings.secret_key


def issue_state_token(
    *, user_id: str, club_id: str, provider: str, customer_id: str, now: datetime
) -> tuple[str, datetime]:
    """Sign a short-lived token binding a mandate setup to its initiator.

    Returns the token and its expiry. The nonce makes every token unique even
    for identical inputs issued in the same second.
    """
    expires_at = now + timedelta(minutes=settings.state_token_ttl_minutes)
    claims = {
        "user_id": user_id,
        "club_id": club_id,
        "provider": provider,
        "customer_id": customer_id,
        "purpose": STATE_TOKEN_PURPOSE,
        "jti": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, _signing_key(), algorithm=settings.state_token_algorithm)
    return token, expires_at


def verify_state_token(token: str, *, now: datetime) -> dict[str, str]:
    # Expiry is checked against the injected clock, not the wall clock.
    try:
        payload = jwt.decode(
            token,
            _signing_key(),
            algorithms=[settings.state_token_algorithm],
            options={"verify_exp": False, "verify_iat": False},
        )
    except JWTError as exc:
        logger.warning("Rejected mandate setup state token: %s", exc)
        raise StateTokenError("Invalid state token") from exc
    if payload.get("purpose") != STATE_TOKEN_PURPOSE:
        raise StateTokenError("Invalid state token")
    expires = payload.get("exp")
    if not isinstance(expires, int) or now.timestamp() >= expires:
        raise StateTokenError("State token has expired")
    missing = [claim for claim in _STATE_CLAIMS if not payload.get(claim)]
    if missing:
        raise StateTokenError("Invalid state token", {"missing_claims": missing})
    return {claim: str(payload[claim]) for claim in _STATE_CLAIMS}
