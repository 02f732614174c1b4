"""Password hashing, JWT issuance and the account lifecycle."""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import email_service
import models_sqlalchemy as models
import models_pydantic as schemas
from config import get_settings
from database import get_db
from errors import BusinessRuleViolation, NotAuthenticated, NotFound, PermissionDenied

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
RESET_TOKEN_TTL = timedelta(minutes=10)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
security = HTTPBearer(auto_error=False)


def hash_password(password):
    return pwd_context.hash(password)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: models.User) -> str:
    settings = get_settings()
    expire = models.utcnow() + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {"sub": user.id, "email": user.email, "role": user.role, "type": "access", "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def create_refresh_token(user: models.User) -> str:
    settings = get_settings()
    expire = models.utcnow() + timedelta(minutes=settings.jwt_refresh_expire_minutes)
    payload = {"sub": user.id, "type": "refresh", "exp": expire}
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm=ALGORITHM)


def decode_token(token: str, refresh: bool = False) -> dict:
    """Decode and check a token of the expected type; raise NotAuthenticated otherwise."""
    settings = get_settings()
    secret = settings.jwt_refresh_secret if refresh else settings.jwt_secret
    expected_type = "refresh" if refresh else "access"
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError:
        raise NotAuthenticated("Invalid refresh token" if refresh else "Invalid token.")
    if payload.get("type") != expected_type or not payload.get("sub"):
        raise NotAuthenticated("Invalid refresh token" if refresh else "Invalid token.")
    return payload


def token_pair(user: models.User) -> dict:
    return {"token": create_access_token(user), "refresh_token": create_refresh_token(user)}


def is_admin(user: Optional[models.User]) -> bool:
    return user is not None and user.role == "admin"


# ---------- Dependencies ----------

def _user_from_credentials(credentials: Optional[HTTPAuthorizationCredentials], db: Session) -> models.User:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise NotAuthenticated("Access denied. No token provided.")
    payload = decode_token(credentials.credentials)
    user = db.query(models.User).filter(models.User.id == payload["sub"]).first()
    if not user:
        raise NotAuthenticated("User not found. Token invalid.")
    if not user.is_verified:
        raise NotAuthenticated("Please verify your email to access this resource.", error="EMAIL_NOT_VERIFIED")
    return user


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                     db: Session = Depends(get_db)) -> models.User:
    return _user_from_credentials(credentials, db)


def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                      db: Session = Depends(get_db)) -> Optional[models.User]:
    if credentials is None:
        return None
    try:
        return _user_from_credentials(credentials, db)
    except NotAuthenticated:
        return None


def require_roles(*roles):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        if user.role not in roles:
            raise PermissionDenied("Access denied. Insufficient permissions.")
        return user
    return dependency


require_admin = require_roles("admin")


# ---------- Account lifecycle ----------

def _find_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.lower()).first()


def register(db: Session, payload: schemas.UserCreate) -> models.User:
    if _find_by_email(db, payload.email):
        raise BusinessRuleViolation("User with this email already exists", error="USER_EXISTS")
    user = models.User(
        name=payload.name.strip(),
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        role="user",
        is_verified=False,
        verification_token=secrets.token_hex(32),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered user %s", user.id)
    # Registration succeeds even when the email cannot be delivered
    url = f"{get_settings().frontend_url}/verify-email/{user.verification_token}"
    email_service.try_send_email(user.email, "verification", {"name": user.name, "verification_url": url})
    return user


def login(db: Session, email: str, password: str) -> models.User:
    user = _find_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        raise NotAuthenticated("Invalid email or password", error="INVALID_CREDENTIALS")
    if not user.is_verified:
        raise NotAuthenticated("Please verify your email before logging in", error="EMAIL_NOT_VERIFIED")
    return user


def refresh_tokens(db: Session, refresh_token: str) -> dict:
    payload = decode_token(refresh_token, refresh=True)
    user = db.query(models.User).filter(models.User.id == payload["sub"]).first()
    if not user:
        raise NotFound("User not found", error="USER_NOT_FOUND")
    return token_pair(user)


def verify_email(db: Session, token: str) -> models.User:
    user = db.query(models.User).filter(models.User.verification_token == token).first()
    if not user:
        raise BusinessRuleViolation("Invalid or expired verification token", error="INVALID_TOKEN")
    user.is_verified = True
    user.verification_token = None
    db.commit()
    return user


def resend_verification(db: Session, email: str) -> None:
    user = _find_by_email(db, email)
    if not user:
        raise NotFound("User not found", error="USER_NOT_FOUND")
    if user.is_verified:
        raise BusinessRuleViolation("User is already verified", error="ALREADY_VERIFIED")
    user.verification_token = secrets.token_hex(32)
    db.commit()
    url = f"{get_settings().frontend_url}/verify-email/{user.verification_token}"
    if not email_service.try_send_email(user.email, "verification", {"name": user.name, "verification_url": url}):
        raise BusinessRuleViolation("Failed to send verification email", error="EMAIL_ERROR", status_code=500)


def forgot_password(db: Session, email: str) -> None:
    user = _find_by_email(db, email)
    if not user:
        raise NotFound("User not found", error="USER_NOT_FOUND")
    user.reset_password_token = secrets.token_hex(32)
    user.reset_password_expire = models.utcnow() + RESET_TOKEN_TTL
    db.commit()
    url = f"{get_settings().frontend_url}/reset-password/{user.reset_password_token}"
    if not email_service.try_send_email(user.email, "password_reset", {"name": user.name, "reset_url": url}):
        user.reset_password_token = None
        user.reset_password_expire = None
        db.commit()
        raise BusinessRuleViolation("Failed to send password reset email", error="EMAIL_ERROR", status_code=500)


def reset_password(db: Session, token: str, password: str) -> None:
    user = db.query(models.User).filter(
        models.User.reset_password_token == token,
        models.User.reset_password_expire > models.utcnow(),
    ).first()
    if not user:
        raise BusinessRuleViolation("Invalid or expired reset token", error="INVALID_TOKEN")
    user.password_hash = hash_password(password)
    user.reset_password_token = None
    user.reset_password_expire = None
    db.commit()


def change_password(db: Session, user: models.User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise BusinessRuleViolation("Current password is incorrect", error="INVALID_PASSWORD")
    user.password_hash = hash_password(new_password)
    db.commit()
