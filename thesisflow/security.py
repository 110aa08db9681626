# thesisflow/security.py
from __future__ import annotations
"""
Identity tokens and document fingerprints.

- Bearer JWT (PyJWT) carrying the caller's role and faculty/department scope
- HMAC-SHA256 fingerprints printed on generated review documents
- Constant-time comparison
"""

from typing import Any, Dict, Optional
import base64
import hashlib
import hmac
import os
import secrets
import time

import jwt  # PyJWT

from thesisflow.context import Actor
from thesisflow.errors import AuthorizationError
from thesisflow.rules import as_role

JWT_ISSUER = os.getenv("THESIS_JWT_ISSUER", "thesisflow")
JWT_ALGO = os.getenv("THESIS_JWT_ALGO", "HS256")
JWT_TTL = int(os.getenv("THESIS_JWT_TTL", "28800"))  # 8h
JWT_LEEWAY = int(os.getenv("THESIS_JWT_LEEWAY", "0"))


def _jwt_secret() -> str:
    # read per call so a deployment (or a test) can rotate it without re-import
    secret = os.getenv("THESIS_JWT_SECRET", "")
    if not secret:
        raise RuntimeError("JWT is not configured. Set THESIS_JWT_SECRET.")
    return secret


def _hmac_secret() -> str:
    return os.getenv("THESIS_HMAC_SECRET") or os.getenv("THESIS_JWT_SECRET") or "thesisflow_fingerprint"


# =========================
# Token & HMAC utilities
# =========================
def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def random_token(nbytes: int = 16) -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).rstrip(b"=").decode("ascii")


def sign_data(data: str, secret: Optional[str] = None) -> str:
    """HMAC-SHA256 fingerprint, url-safe base64 without padding."""
    key = (secret or _hmac_secret()).encode("utf-8")
    mac = hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(mac).rstrip(b"=").decode("ascii")


def verify_signature(data: str, signature: str, secret: Optional[str] = None) -> bool:
    return constant_time_equals(sign_data(data, secret), signature)


# =========================
# JWT
# =========================
def issue_token(user: Dict[str, Any], *, ttl_seconds: Optional[int] = None) -> str:
    """
    Issue a bearer token for a provisioned user.

    Claims: sub, iss, iat, exp, jti, role, faculty, department
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": user["id"],
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + int(ttl_seconds or JWT_TTL),
        "jti": random_token(),
        "role": as_role(user.get("role")).value,
    }
    for claim in ("faculty", "department"):
        if user.get(claim):
            payload[claim] = user[claim]
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGO)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode and validate a bearer token. Raises jwt exceptions if invalid/expired."""
    return jwt.decode(
        token,
        _jwt_secret(),
        algorithms=[JWT_ALGO],
        issuer=JWT_ISSUER,
        leeway=JWT_LEEWAY,
        options={"require": ["exp", "iat", "iss", "sub"]},
    )


def actor_from_token(token: str) -> Actor:
    """Bearer token -> Actor. Any decoding failure becomes an AuthorizationError."""
    try:
        claims = verify_token(token)
        role = as_role(claims.get("role"))
    except (jwt.PyJWTError, ValueError) as ex:
        raise AuthorizationError("Invalid or expired token", {"reason": type(ex).__name__}) from ex
    return Actor(id=claims["sub"], role=role,
                 faculty=claims.get("faculty"), department=claims.get("department"))
