"""
Architect Studio - Authentication
Cookie-carried JWT sessions, bcrypt password hashing, Google OAuth sign-in.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session
from starlette.requests import cookie_parser

from config import settings
from database import get_db
from user_db import User

logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────
COOKIE_NAME  = "auth_session"
ALGORITHM    = "HS256"
SESSION_DAYS = 7
MAX_AGE      = SESSION_DAYS * 24 * 60 * 60

GOOGLE_AUTH_URL     = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL    = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES       = [
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
]

pwd_context  = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


# ── Password helpers ──────────────────────────────────────────────────────────
def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


# ── Session tokens ────────────────────────────────────────────────────────────
def create_session_token(user_id: str, email: Optional[str]) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"userId": user_id, "email": email, "iat": now, "exp": now + timedelta(days=SESSION_DAYS)},
        settings.session_secret, algorithm=ALGORITHM,
    )


def verify_session(token: Optional[str]) -> Optional[str]:
    """
    Return the session's userId, or None.
    Bad signature, expiry, malformed input and a non-string userId all fail
    closed; this never raises.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[ALGORITHM])
    except (JWTError, ValueError) as e:
        logger.debug(f"[AUTH] session rejected: {e}")
        return None
    user_id = payload.get("userId")
    return user_id if isinstance(user_id, str) and user_id else None


def read_session_cookie(cookie_header: Optional[str]) -> Optional[str]:
    if not cookie_header:
        return None
    return cookie_parser(cookie_header).get(COOKIE_NAME) or None


def session_user_id(cookie_header: Optional[str]) -> Optional[str]:
    return verify_session(read_session_cookie(cookie_header))


def session_cookie(token: str) -> str:
    secure = "Secure; " if settings.is_production else ""
    return f"{COOKIE_NAME}={token}; HttpOnly; {secure}SameSite=Lax; Max-Age={MAX_AGE}; Path=/"


def clear_session_cookie() -> str:
    secure = "Secure; " if settings.is_production else ""
    return f"{COOKIE_NAME}=; HttpOnly; {secure}SameSite=Lax; Max-Age=0; Path=/"


# ── FastAPI dependencies ──────────────────────────────────────────────────────
async def get_current_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Returns the signed-in User row, or None if no/invalid session."""
    user_id = session_user_id(request.headers.get("cookie"))
    if user_id is None:
        return None
    return db.get(User, user_id)


async def require_auth(user: Optional[User] = Depends(get_current_user)) -> User:
    """Raises 401 if unauthenticated."""
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


# ── User CRUD ─────────────────────────────────────────────────────────────────
def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.lower().strip()).first()


def create_user(
    db: Session,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> User:
    if get_user_by_email(db, email):
        raise HTTPException(status_code=409, detail="An account with this email already exists")
    user = User(
        email=email.lower().strip(),
        password_hash=hash_password(password),
        first_name=first_name or None,
        last_name=last_name or None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"[AUTH] registered user {user.id}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> User:
    user = get_user_by_email(db, email)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.password_hash:
        raise HTTPException(
            status_code=401,
            detail="This account uses Google sign-in. Please sign in with Google.",
        )
    if not verify_password(password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return user


# ── Google OAuth ──────────────────────────────────────────────────────────────
def google_oauth_url(redirect_uri: str) -> str:
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(GOOGLE_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
    }
    return str(httpx.URL(GOOGLE_AUTH_URL, params=params))


async def exchange_google_code(code: str, redirect_uri: str) -> dict:
    async with httpx.AsyncClient(timeout=20.0) as client:
        resp = await client.post(GOOGLE_TOKEN_URL, data={
            "code": code,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        })
        resp.raise_for_status()
        return resp.json()


async def fetch_google_profile(access_token: str) -> dict:
    async with httpx.AsyncClient(timeout=20.0) as client:
        resp = await client.get(
            GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        resp.raise_for_status()
        return resp.json()


def upsert_google_user(db: Session, profile: dict) -> User:
    """Match on email; refresh names/picture, or create the account."""
    email = (profile.get("email") or "").lower().strip()
    if not email:
        raise ValueError("Google profile has no email")
    user = get_user_by_email(db, email)
    if user is None:
        user = User(email=email)
        if profile.get("id"):
            user.id = str(profile["id"])
        db.add(user)
    user.first_name        = profile.get("given_name")
    user.last_name         = profile.get("family_name")
    user.profile_image_url = profile.get("picture")
    db.commit()
    db.refresh(user)
    return user
