import random
import string
import hashlib
import hmac
import time
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError

from config import settings

# ── JWT ───────────────────────────────────────────────────────────────────────
ALGORITHM = "HS256"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Lève JWTError si invalide ou expiré."""
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])


def verify_access_token(token: str) -> Optional[dict]:
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None


# ── OTP ───────────────────────────────────────────────────────────────────────
def generate_otp(length: int = 6) -> str:
    return "".join(random.choices(string.digits, k=length))


# ── Code commande ─────────────────────────────────────────────────────────────
def generate_order_code() -> str:
    """Code lisible humain : FRN-482913"""
    digits = "".join(random.choices(string.digits, k=6))
    return f"{settings.ORDER_CODE_PREFIX}-{digits}"


# ── Signature webhooks (format Stripe-Signature) ──────────────────────────────
def sign_webhook_payload(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Construit l'en-tête `t=<ts>,v1=<hmac>` pour un corps brut."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode() + body
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def verify_webhook_signature(
    body: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
) -> bool:
    """Vérifie l'en-tête de signature et la fraîcheur de l'horodatage."""
    if not header:
        return False
    parts = {}
    candidates = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "v1":
            candidates.append(value)
        else:
            parts[key] = value
    try:
        ts = int(parts.get("t", ""))
    except ValueError:
        return False
    if abs(time.time() - ts) > tolerance_seconds:
        return False

    expected = hmac.new(
        secret.encode(),
        f"{ts}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in candidates)
