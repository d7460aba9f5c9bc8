import logging
import os
import secrets
from datetime import timedelta
from typing import Annotated, Optional

from db import SessionDep
from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from itsdangerous import BadSignature, URLSafeTimedSerializer
from lifecycle import Actor
from mailer import NotifierDep
from models import EmailVerification, MfaChallenge, PasswordResetToken, User, utcnow
from otp import (
    MAX_ATTEMPTS,
    MFA_CODE_TTL,
    RESET_TOKEN_TTL,
    SIGNUP_CODE_TTL,
    expires_after,
    generate_code,
    generate_token,
    hash_token,
    is_code,
    is_expired,
    mask_email,
)
from passlib.context import CryptContext
from ratelimit import auth_limit, reset_limit
from schemas import (
    EmailCodeData,
    ForgotPasswordData,
    LoginData,
    MfaCodeData,
    ResetPasswordData,
    UserCreate,
    UserRead,
)
from sqlmodel import Session, select

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

SESSION_COOKIE = "session"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(60 * 60 * 24 * 7)))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")

SECRET_KEY = os.getenv("SESSION_SECRET") or secrets.token_hex(32)
serializer = URLSafeTimedSerializer(SECRET_KEY, salt="carematch-session")


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_session_token(user_id: int) -> str:
    """
    Store user_id in the signed token.
    Example data:
        {"user_id": 3}
    The role is always re-read from the database.
    """
    return serializer.dumps({"user_id": user_id})


def verify_session_token(token: str, max_age_seconds: int = SESSION_MAX_AGE):
    """
    Returns dict {'user_id': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadSignature:
        return None


def actor_from_user(user: User) -> Actor:
    return Actor(id=user.id, role=user.role, name=user.full_name, email=user.email)


def _load_actor(session: SessionDep, session_token: Optional[str]) -> Optional[Actor]:
    if session_token is None:
        return None
    data = verify_session_token(session_token)
    if not data:
        return None
    user = session.get(User, data["user_id"])
    if user is None:
        return None
    return actor_from_user(user)


def get_current_actor(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Actor:
    """
    Reads the 'session' cookie, verifies the token, looks up the user
    and returns it as an Actor. Raises 401 if not logged in / invalid.
    """
    actor = _load_actor(session, session_token)
    if actor is None:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return actor


CurrentActorDep = Annotated[Actor, Depends(get_current_actor)]


def get_optional_actor(
    session: SessionDep,
    session_token: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE),
) -> Optional[Actor]:
    """Like get_current_actor, but returns None instead of raising 401."""
    return _load_actor(session, session_token)


OptionalActorDep = Annotated[Optional[Actor], Depends(get_optional_actor)]


def require_admin(actor: CurrentActorDep) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admins only")
    return actor


AdminDep = Annotated[Actor, Depends(require_admin)]


def _set_session_cookie(resp: Response, user_id: int) -> None:
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_token(user_id),
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
    )


def _logged_in(user: User) -> JSONResponse:
    resp = JSONResponse({"ok": True, "id": user.id, "role": user.role})
    _set_session_cookie(resp, user.id)
    return resp


def _check_code(session: Session, record, code: str) -> None:
    """
    Shared checks for an emailed code (signup or MFA).
    Every guess counts against the record, right or wrong.
    """
    if record is None or record.used_at is not None:
        raise HTTPException(status_code=400, detail="Invalid code.")
    if is_expired(record.expires_at):
        raise HTTPException(status_code=400, detail="Code expired.")
    if record.attempts >= MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many attempts.")

    record.attempts += 1
    session.add(record)
    session.commit()
    if not verify_password(code, record.code_hash):
        raise HTTPException(status_code=400, detail="Invalid code.")


def _refresh_code(session: Session, record, ttl: timedelta) -> str:
    code = generate_code()
    record.code_hash = hash_password(code)
    record.attempts = 0
    record.expires_at = expires_after(ttl)
    session.add(record)
    session.commit()
    return code


def _send_code(notifier, email: str, code: str) -> None:
    try:
        notifier.send_verification_code(email, code)
    except Exception as exc:
        logger.exception("could not mail verification code")
        raise HTTPException(
            status_code=500,
            detail="Could not send verification code. Please try again.",
        ) from exc


# --- signup + email verification ---


@router.post("/register", status_code=201)
@auth_limit
def register(request: Request, user_in: UserCreate, session: SessionDep, notifier: NotifierDep):
    """
    Start a signup: mail a 6-digit code and return the token that pairs
    with it. The account is created by /email/verify.
    """
    email = user_in.email.lower()
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Signup failed.")

    pending = session.exec(
        select(EmailVerification)
        .where(EmailVerification.email == email)
        .order_by(EmailVerification.id.desc())
    ).first()
    if pending is not None and pending.used_at is None and not is_expired(pending.expires_at):
        # Same signup retried: new code, same token.
        code = _refresh_code(session, pending, SIGNUP_CODE_TTL)
        _send_code(notifier, email, code)
        return JSONResponse({"ok": True, "verifyToken": pending.verify_token})

    code = generate_code()
    pending = EmailVerification(
        email=email,
        full_name=user_in.full_name.strip(),
        phone=user_in.phone,
        region=user_in.region.value if user_in.region else None,
        password_hash=hash_password(user_in.password),
        verify_token=generate_token(),
        code_hash=hash_password(code),
        expires_at=expires_after(SIGNUP_CODE_TTL),
    )
    session.add(pending)
    session.commit()
    session.refresh(pending)

    try:
        _send_code(notifier, email, code)
    except HTTPException:
        session.delete(pending)
        session.commit()
        raise
    logger.info("signup pending for verification %s", pending.id)
    return {"ok": True, "verifyToken": pending.verify_token}


@router.post("/email/verify")
@auth_limit
def verify_email(request: Request, data: EmailCodeData, session: SessionDep):
    """Check the signup code; on success the account exists and is logged in."""
    if not data.verify_token or not is_code(data.code):
        raise HTTPException(status_code=400, detail="Invalid input.")

    record = session.exec(
        select(EmailVerification).where(EmailVerification.verify_token == data.verify_token)
    ).first()
    _check_code(session, record, data.code)

    user = session.exec(select(User).where(User.email == record.email)).first()
    if user is None:
        user = User(
            email=record.email,
            full_name=record.full_name,
            phone=record.phone,
            region=record.region,
            password_hash=record.password_hash,
            email_verified_at=utcnow(),
        )
        session.add(user)
        session.flush()
        logger.info("registered user %s", user.id)

    record.used_at = utcnow()
    record.user_id = user.id
    session.add(record)
    session.commit()
    session.refresh(user)
    return _logged_in(user)


@router.post("/email/resend")
@auth_limit
def resend_email_code(
    request: Request, data: EmailCodeData, session: SessionDep, notifier: NotifierDep
):
    if not data.verify_token:
        raise HTTPException(status_code=400, detail="Invalid input.")
    record = session.exec(
        select(EmailVerification).where(EmailVerification.verify_token == data.verify_token)
    ).first()
    if record is None:
        raise HTTPException(status_code=400, detail="Cannot resend.")
    if record.used_at is not None:
        raise HTTPException(status_code=400, detail="Already verified.")

    code = _refresh_code(session, record, SIGNUP_CODE_TTL)
    _send_code(notifier, record.email, code)
    return {"ok": True}


# --- login + MFA ---


@router.post("/login")
@auth_limit
def login(request: Request, payload: LoginData, session: SessionDep, notifier: NotifierDep):
    """
    First login step: check email + password, then mail a code.
    The session cookie is only set by /mfa/verify.
    """
    user = session.exec(
        select(User).where(User.email == payload.email.lower())
    ).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    # Only after a correct password may we say the address is unverified.
    if user.email_verified_at is None:
        return JSONResponse(
            {"ok": False, "code": "EMAIL_NOT_VERIFIED", "message": "Email not verified."},
            status_code=403,
        )

    code = generate_code()
    challenge = MfaChallenge(
        user_id=user.id,
        mfa_token=generate_token(),
        code_hash=hash_password(code),
        expires_at=expires_after(MFA_CODE_TTL),
    )
    session.add(challenge)
    session.commit()
    session.refresh(challenge)

    try:
        _send_code(notifier, user.email, code)
    except HTTPException:
        session.delete(challenge)
        session.commit()
        raise

    return {
        "ok": True,
        "mfaRequired": True,
        "mfaToken": challenge.mfa_token,
        "channels": [challenge.channel],
        "maskedEmail": mask_email(user.email),
    }


@router.post("/mfa/verify")
@auth_limit
def verify_mfa(request: Request, data: MfaCodeData, session: SessionDep):
    if not data.mfa_token or not is_code(data.code):
        raise HTTPException(status_code=400, detail="Invalid input.")

    challenge = session.exec(
        select(MfaChallenge).where(MfaChallenge.mfa_token == data.mfa_token)
    ).first()
    _check_code(session, challenge, data.code)

    user = session.get(User, challenge.user_id)
    if user is None:
        raise HTTPException(status_code=400, detail="Invalid code.")
    challenge.used_at = utcnow()
    session.add(challenge)
    session.commit()
    logger.info("user %s logged in", user.id)
    return _logged_in(user)


@router.post("/mfa/resend")
@auth_limit
def resend_mfa_code(
    request: Request, data: MfaCodeData, session: SessionDep, notifier: NotifierDep
):
    if not data.mfa_token:
        raise HTTPException(status_code=400, detail="Invalid input.")
    challenge = session.exec(
        select(MfaChallenge).where(MfaChallenge.mfa_token == data.mfa_token)
    ).first()
    if challenge is None:
        raise HTTPException(status_code=400, detail="Cannot resend.")
    if challenge.used_at is not None:
        raise HTTPException(status_code=400, detail="Already verified.")
    user = session.get(User, challenge.user_id)
    if user is None:
        raise HTTPException(status_code=400, detail="Cannot resend.")

    code = _refresh_code(session, challenge, MFA_CODE_TTL)
    _send_code(notifier, user.email, code)
    return {"ok": True}


@router.post("/logout")
def logout():
    """Clear the session cookie."""
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/me", response_model=UserRead)
def read_me(actor: CurrentActorDep, session: SessionDep):
    """Get info about the currently logged-in user."""
    return session.get(User, actor.id)


# --- password reset ---


def reset_url_for(token: str) -> str:
    return f"{APP_BASE_URL}/pages/resetPassword.html?token={token}"


@router.post("/password/forgot")
@reset_limit
def forgot_password(
    request: Request, data: ForgotPasswordData, session: SessionDep, notifier: NotifierDep
):
    """
    Mail a reset link to a verified account.
    The answer is always {"ok": true} so registered addresses cannot be
    told apart from unknown ones.
    """
    email = data.email.strip().lower()
    user = None
    if email:
        user = session.exec(select(User).where(User.email == email)).first()
    if user is None or user.email_verified_at is None:
        return {"ok": True}

    # One live link per account.
    stale = session.exec(
        select(PasswordResetToken)
        .where(PasswordResetToken.user_id == user.id)
        .where(PasswordResetToken.used_at == None)  # noqa: E711
    ).all()
    for old in stale:
        session.delete(old)
    token = generate_token()
    record = PasswordResetToken(
        user_id=user.id,
        token_hash=hash_token(token),
        expires_at=expires_after(RESET_TOKEN_TTL),
    )
    session.add(record)
    session.commit()

    try:
        notifier.send_password_reset(user.email, reset_url_for(token))
    except Exception:
        logger.exception("could not mail password reset link to user %s", user.id)
        session.delete(record)
        session.commit()
    return {"ok": True}


@router.post("/password/reset")
@reset_limit
def reset_password(request: Request, data: ResetPasswordData, session: SessionDep):
    token = data.token.strip()
    if not token or len(data.new_password) < 8:
        raise HTTPException(status_code=400, detail="Invalid input.")

    record = session.exec(
        select(PasswordResetToken).where(PasswordResetToken.token_hash == hash_token(token))
    ).first()
    if record is None or record.used_at is not None or is_expired(record.expires_at):
        raise HTTPException(status_code=400, detail="Invalid or expired link.")
    if record.attempts >= MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many attempts. Try again later.")
    record.attempts += 1

    user = session.get(User, record.user_id)
    if user is None:
        session.add(record)
        session.commit()
        raise HTTPException(status_code=400, detail="Invalid or expired link.")

    user.password_hash = hash_password(data.new_password)
    record.used_at = utcnow()
    session.add(user)
    session.add(record)
    session.commit()
    logger.info("password reset for user %s", user.id)

    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE)
    return resp
