import re
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campus_lost_found.database import get_db
from campus_lost_found.errors import AuthenticationError, AccountUnverifiedError, ValidationError
from campus_lost_found.logging_config import logging_config
from campus_lost_found.models import User, UserRole
from campus_lost_found.rate_limit import auth_limit
from campus_lost_found.schemas import AuthResponse, LoginRequest, MessageResponse, SignupRequest, UserRead
from campus_lost_found.security import get_current_user, security_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6


@router.post("/signup", response_model=AuthResponse, status_code=201)
@auth_limit
def signup(request: Request, payload: SignupRequest, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    user = User(
        student_id=security_manager.sanitize_input(payload.student_id.strip()),
        email=email,
        password_hash=security_manager.hash_password(payload.password),
        first_name=security_manager.sanitize_input(payload.first_name),
        last_name=security_manager.sanitize_input(payload.last_name),
        phone=payload.phone,
        department=security_manager.sanitize_input(payload.department),
        year_of_study=payload.year_of_study,
        role=UserRole.STUDENT,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("Student ID or email already registered")
    db.refresh(user)

    logger.info(f"New user registered: {user.email}")
    return AuthResponse(
        message="Registration successful!",
        token=security_manager.create_access_token(user),
        user=UserRead.model_validate(user),
    )


@router.post("/login", response_model=AuthResponse)
@auth_limit
def login(request: Request, payload: LoginRequest, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if not user or not security_manager.verify_password(payload.password, user.password_hash):
        logging_config.log_security_event("auth_failure", email=email, reason="invalid_credentials")
        raise AuthenticationError()
    if not user.is_verified:
        logging_config.log_security_event("auth_failure", user_id=user.id, email=email, reason="unverified")
        raise AccountUnverifiedError()

    logging_config.log_security_event("auth_success", user_id=user.id, email=email)
    return AuthResponse(
        message="Login successful!",
        token=security_manager.create_access_token(user),
        user=UserRead.model_validate(user),
    )


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"success": True, "user": UserRead.model_validate(user)}


@router.post("/logout", response_model=MessageResponse)
def logout(user: User = Depends(get_current_user)):
    # トークンはステートレスなのでクライアント側で破棄する
    logger.info(f"User logged out: {user.email}")
    return MessageResponse(message="Logout successful")
