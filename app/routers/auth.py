from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import User
from app.schemas.auth import (
    AuthResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from app.services.auth_service import (
    authenticate_user,
    format_user,
    register_user,
    request_password_reset,
    reset_password,
)
from app.services.result import Result
from app.services.security import get_current_user

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _respond(db: Session, result: Result) -> JSONResponse:
    if not result.ok:
        db.rollback()
        return JSONResponse(status_code=result.status_code, content={"message": result.error})
    db.commit()
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.value))


@router.post("/register", status_code=201, response_model=AuthResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    return _respond(db, register_user(db, payload))


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    return _respond(db, authenticate_user(db, payload.email, payload.password))


@router.post("/logout")
def logout(current_user: User = Depends(get_current_user)):
    # Tokens are stateless; the dashboard drops its copy
    return {"message": "Logged out successfully"}


@router.post("/forgot-password", response_model=ForgotPasswordResponse, response_model_exclude_none=True)
def forgot_password(payload: ForgotPasswordRequest, db: Session = Depends(get_db)):
    response = request_password_reset(db, payload.email)
    db.commit()
    return response


@router.post("/reset-password")
def reset(payload: ResetPasswordRequest, db: Session = Depends(get_db)):
    return _respond(db, reset_password(db, payload.token, payload.password))


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return {"user": format_user(current_user)}
