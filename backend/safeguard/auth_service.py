import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from safeguard.access_policy import Role, parse_role
from safeguard.db import SessionLocal, get_db_session
from safeguard.workflow_models import User


JWT_SECRET = os.getenv("JWT_SECRET", "dev-change-me")
JWT_ISS = os.getenv("JWT_ISS", "safeguard-identity")
JWT_EXP_SECONDS = int(os.getenv("JWT_EXP_SECONDS", "43200"))
JWT_LEEWAY_SECONDS = int(os.getenv("JWT_LEEWAY_SECONDS", "30"))

DEFAULT_AGENT_EMAIL = os.getenv("DEFAULT_AGENT_EMAIL", "agent@example.com")
DEFAULT_PARTNER_EMAIL = os.getenv("DEFAULT_PARTNER_EMAIL", "partner@example.com")
DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.com")

DEV_ENVIRONMENTS = {"dev", "development", "local", "test"}
WEAK_JWT_SECRETS = {"dev-change-me", "change-me", "secret", "changeme"}
MIN_JWT_SECRET_LENGTH = 16

bearer_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthUser:
    id: uuid.UUID
    email: str
    role: str


def is_non_dev_env(app_env: Optional[str]) -> bool:
    return str(app_env or "").strip().lower() not in DEV_ENVIRONMENTS


def is_weak_jwt_secret(secret: Optional[str]) -> bool:
    value = str(secret or "").strip()
    return value.lower() in WEAK_JWT_SECRETS or len(value) < MIN_JWT_SECRET_LENGTH


def should_seed_default_users(app_env: Optional[str], override: Optional[str]) -> bool:
    flag = str(override or "").strip().lower()
    if flag in {"1", "true", "yes"}:
        return True
    if flag in {"0", "false", "no"}:
        return False
    return not is_non_dev_env(app_env)


def _segment(obj: dict) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unsegment(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


def _sign(signing_input: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()


def issue_token(user_id: uuid.UUID, email: str, secret: Optional[str] = None) -> str:
    """Mint a token the way the identity provider does; used by dev tooling and tests."""
    issued_at = int(time.time())
    claims = {
        "iss": JWT_ISS,
        "sub": str(user_id),
        "email": email,
        "iat": issued_at,
        "nbf": issued_at,
        "exp": issued_at + JWT_EXP_SECONDS,
    }
    body = f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(claims)}"
    signature = base64.urlsafe_b64encode(_sign(body, secret or JWT_SECRET)).rstrip(b"=").decode("ascii")
    return f"{body}.{signature}"


def _check_claims(claims: dict, now: int):
    if claims.get("iss") != JWT_ISS:
        raise HTTPException(status_code=401, detail="invalid_token_issuer")
    try:
        expires = int(claims.get("exp") or 0)
        not_before = int(claims.get("nbf") or 0)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="invalid_token_payload")
    if expires + JWT_LEEWAY_SECONDS < now:
        raise HTTPException(status_code=401, detail="token_expired")
    if not_before - JWT_LEEWAY_SECONDS > now:
        raise HTTPException(status_code=401, detail="token_not_yet_valid")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="invalid_token_payload")


def decode_token(token: str) -> dict:
    """Verify an HS256 bearer token from the identity provider and return its claims."""
    parts = str(token or "").split(".")
    if len(parts) != 3:
        raise HTTPException(status_code=401, detail="invalid_token")
    header_part, claims_part, signature_part = parts
    try:
        signature = _unsegment(signature_part)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid_token_signature")
    if not hmac.compare_digest(_sign(f"{header_part}.{claims_part}", JWT_SECRET), signature):
        raise HTTPException(status_code=401, detail="invalid_token_signature")
    try:
        header = json.loads(_unsegment(header_part))
        claims = json.loads(_unsegment(claims_part))
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid_token_payload")
    if not isinstance(header, dict) or header.get("alg") != "HS256" or not isinstance(claims, dict):
        raise HTTPException(status_code=401, detail="invalid_token_payload")
    _check_claims(claims, int(time.time()))
    return claims


def _active_profile(db: Session, subject: str) -> Optional[User]:
    try:
        profile_id = uuid.UUID(str(subject))
    except ValueError:
        return None
    profile = db.get(User, profile_id)
    if profile is None or not profile.is_active:
        return None
    return profile


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> AuthUser:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="missing_auth_token")
    payload = decode_token(credentials.credentials)
    db = SessionLocal()
    try:
        user = _active_profile(db, payload["sub"])
        if not user:
            raise HTTPException(status_code=401, detail="user_not_found")
        # The profile row, not the token, is the source of truth for the role.
        if parse_role(user.role) is None:
            raise HTTPException(status_code=403, detail="forbidden_role")
        return AuthUser(id=user.id, email=user.email, role=user.role)
    finally:
        db.close()


def require_role(*roles: str):
    allowed = {r.strip() for r in roles if r.strip()}

    def _guard(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail="forbidden_role")
        return user

    return _guard


def ensure_default_users():
    with get_db_session() as db:
        for email, role in [
            (DEFAULT_AGENT_EMAIL, Role.AGENT),
            (DEFAULT_PARTNER_EMAIL, Role.PARTNER),
            (DEFAULT_ADMIN_EMAIL, Role.ADMIN),
        ]:
            existing = db.scalar(select(User).where(User.email == email))
            if existing:
                continue
            db.add(User(email=email, full_name=role.value.title(), role=role.value, is_active=True))
            logger.info("Seeded default %s profile %s", role.value, email)
