from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import User
from app.schemas.auth import RegisterRequest
from app.services.result import Result
from app.services.security import (
    create_access_token,
    generate_reset_token,
    get_password_hash,
    hash_reset_token,
    verify_password,
)

logger = get_logger("auth_service")

FORGOT_PASSWORD_MESSAGE = "If the email exists, a reset link has been sent"


def format_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "phone": user.phone,
        "companyName": user.company_name,
        "role": user.role,
    }


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()


def register_user(db: Session, payload: RegisterRequest) -> Result[dict]:
    if find_user_by_email(db, payload.email):
        return Result.failure("Email is already registered", code="email_taken", status_code=409)

    user = User(
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        full_name=payload.full_name,
        phone=payload.phone or None,
        company_name=payload.company_name,
        role="user",
    )
    try:
        with db.begin_nested():
            db.add(user)
            db.flush()
    except IntegrityError:
        # lost a race with a concurrent registration for the same email
        return Result.failure("Email is already registered", code="email_taken", status_code=409)
    logger.info("User registered", extra={"context": {"user_id": str(user.id)}})
    return Result.success({"user": format_user(user), "token": create_access_token(user)}, status_code=201)


def authenticate_user(db: Session, email: str, password: str) -> Result[dict]:
    user = find_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        return Result.failure("Invalid credentials", code="invalid_credentials", status_code=401)
    return Result.success({"user": format_user(user), "token": create_access_token(user)})


def request_password_reset(db: Session, email: str) -> dict:
    """Always answers with the same message so emails cannot be enumerated."""
    response: dict = {"message": FORGOT_PASSWORD_MESSAGE}
    user = find_user_by_email(db, email)
    if not user:
        return response

    raw_token, token_hash = generate_reset_token()
    user.reset_password_token = token_hash
    user.reset_password_expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=settings.reset_token_expires_minutes
    )
    db.flush()
    logger.info("Password reset requested", extra={"context": {"user_id": str(user.id)}})

    if not settings.is_production:
        response["resetToken"] = raw_token
    return response


def reset_password(db: Session, token: str, new_password: str) -> Result[dict]:
    user = (
        db.query(User)
        .filter(
            User.reset_password_token == hash_reset_token(token),
            User.reset_password_expires_at > datetime.now(timezone.utc),
        )
        .first()
    )
    if not user:
        return Result.failure("Invalid or expired reset token", code="invalid_token", status_code=400)

    user.password_hash = get_password_hash(new_password)
    user.reset_password_token = None
    user.reset_password_expires_at = None
    db.flush()
    logger.info("Password reset completed", extra={"context": {"user_id": str(user.id)}})
    return Result.success({"message": "Password has been reset"})
