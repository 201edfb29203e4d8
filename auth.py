import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, Request, Response
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from models import User, UserSession, utcnow
from schemas import RegisterIn

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72


class LoginRequired(Exception):
    """Raised by the session gate; the app answers with a redirect to /login."""


class UsernameTaken(ValueError):
    def __init__(self) -> None:
        super().__init__("Username is already taken")


class InvalidCredentials(ValueError):
    def __init__(self) -> None:
        super().__init__("Incorrect username or password")


def hash_password(password: str) -> str:
    secret = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(secret, bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    secret = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.checkpw(secret, hashed_password.encode("utf-8"))


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def session_id_for_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.lifetime = timedelta(days=get_settings().session_days)

    def register(self, data: RegisterIn) -> User:
        username = data.username.strip()
        existing = self.session.scalar(
            select(User).where(func.lower(User.username) == username.lower())
        )
        if existing:
            raise UsernameTaken()
        user = User(
            username=username,
            password_hash=hash_password(data.password),
            age=data.age,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise UsernameTaken() from exc
        self.session.refresh(user)
        logger.info(f"user_registered: user={user.id}")
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.session.scalar(
            select(User).where(func.lower(User.username) == username.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        return user

    def create_session(self, user_id: str) -> str:
        token = generate_session_token()
        self.session.add(
            UserSession(
                id=session_id_for_token(token),
                user_id=user_id,
                expires_at=utcnow() + self.lifetime,
            )
        )
        self.session.commit()
        return token

    def validate_session_token(
        self, token: str
    ) -> Optional[tuple[UserSession, User]]:
        row = self.session.execute(
            select(UserSession, User)
            .join(User, User.id == UserSession.user_id)
            .where(UserSession.id == session_id_for_token(token))
        ).first()
        if row is None:
            return None
        user_session, user = row
        now = utcnow()
        if now >= user_session.expires_at:
            self.session.delete(user_session)
            self.session.commit()
            return None
        if now >= user_session.expires_at - self.lifetime / 2:
            user_session.expires_at = now + self.lifetime
            self.session.commit()
        return user_session, user

    def invalidate_session(self, session_id: str) -> None:
        self.session.execute(delete(UserSession).where(UserSession.id == session_id))
        self.session.commit()

    def purge_expired(self) -> int:
        result = self.session.execute(
            delete(UserSession).where(UserSession.expires_at <= utcnow())
        )
        self.session.commit()
        return result.rowcount or 0


def set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie,
        token,
        max_age=settings.session_days * 24 * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        path="/",
    )


def delete_session_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().session_cookie, path="/")


def get_current_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    token = request.cookies.get(get_settings().session_cookie)
    if not token:
        return None
    result = AuthService(db).validate_session_token(token)
    if result is None:
        return None
    user_session, user = result
    request.state.session = user_session
    return user


def require_user(user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise LoginRequired()
    return user
