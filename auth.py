import os
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import HTTPException, Depends, Request, Response
from jose import jwt, JWTError
from passlib.context import CryptContext

from database import Store, get_db
from schemas import User

# Environment
SESSION_SECRET = os.getenv("SESSION_SECRET", "markethub-dev-secret")
SESSION_ALG = "HS256"
SESSION_COOKIE = "session"
SESSION_MAX_AGE_HOURS = int(os.getenv("SESSION_MAX_AGE_HOURS", "24"))
SECURE_COOKIES = os.getenv("ENV", "development") == "production"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Simple in-memory rate limiting for login (per-IP)
RATE_LIMIT_WINDOW_SEC = int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_SEC", str(60 * 15)))
RATE_LIMIT_MAX_ATTEMPTS = int(os.getenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "20"))
rate_store: Dict[str, List[float]] = {}


def check_rate_limit(ip: str):
    now = datetime.now().timestamp()
    bucket = rate_store.get(ip, [])
    # drop old timestamps
    bucket = [t for t in bucket if now - t <= RATE_LIMIT_WINDOW_SEC]
    if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
    bucket.append(now)
    rate_store[ip] = bucket


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


class SessionStore:
    """Server-side sessions; the cookie only carries a signed session id."""

    def __init__(self):
        self._sessions: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, user_id: int) -> dict:
        session = {
            "sid": secrets.token_urlsafe(24),
            "user_id": user_id,
            "expires_at": datetime.now(timezone.utc) + timedelta(hours=SESSION_MAX_AGE_HOURS),
        }
        now = datetime.now(timezone.utc)
        with self._lock:
            # drop sessions that expired without being looked up again
            for sid in [s for s, data in self._sessions.items() if data["expires_at"] <= now]:
                del self._sessions[sid]
            self._sessions[session["sid"]] = session
        return session

    def get(self, sid: str) -> Optional[dict]:
        with self._lock:
            session = self._sessions.get(sid)
            if session and session["expires_at"] <= datetime.now(timezone.utc):
                del self._sessions[sid]
                return None
        return session

    def destroy(self, sid: str) -> bool:
        with self._lock:
            return self._sessions.pop(sid, None) is not None

    def clear(self):
        with self._lock:
            self._sessions.clear()

    def __len__(self):
        with self._lock:
            return len(self._sessions)


sessions = SessionStore()


def encode_session_token(session: dict) -> str:
    return jwt.encode({"sid": session["sid"], "exp": session["expires_at"]}, SESSION_SECRET, algorithm=SESSION_ALG)


def session_from_request(request: Request) -> Optional[dict]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    try:
        payload = jwt.decode(token, SESSION_SECRET, algorithms=[SESSION_ALG])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sessions.get(sid) if sid else None


def login_user(response: Response, user_id: int) -> None:
    session = sessions.create(user_id)
    response.set_cookie(
        SESSION_COOKIE,
        encode_session_token(session),
        max_age=SESSION_MAX_AGE_HOURS * 3600,
        httponly=True,
        secure=SECURE_COOKIES,
        samesite="lax",
    )


def logout_user(request: Request, response: Response) -> None:
    session = session_from_request(request)
    if session:
        sessions.destroy(session["sid"])
    response.delete_cookie(SESSION_COOKIE)


def optional_user_id(request: Request) -> Optional[int]:
    session = session_from_request(request)
    return session["user_id"] if session else None


def current_user_id(user_id: Optional[int] = Depends(optional_user_id)) -> int:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def get_current_user(user_id: int = Depends(current_user_id), db: Store = Depends(get_db)) -> User:
    user = db.users.get(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def public_user(user: User) -> dict:
    return user.model_dump(mode="json", exclude={"password"})
