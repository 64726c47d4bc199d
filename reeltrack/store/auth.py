"""Session-based authentication on top of the users table."""

import logging
import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from passlib.context import CryptContext

from reeltrack.errors import AuthError, ValidationError
from reeltrack.store.database import Database

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


@dataclass
class AuthSession:
    """A signed-in user's session."""

    token: str
    user: dict
    expires_at: datetime

    @property
    def user_id(self) -> str:
        return self.user["id"]

    def to_dict(self) -> dict:
        return {
            "access_token": self.token,
            "token_type": "bearer",
            "expires_at": self.expires_at.isoformat(),
            "user": self.user,
        }


class Subscription:
    """Handle returned by on_auth_state_change."""

    def __init__(self, service: "AuthService", callback: Callable):
        self._service = service
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._service._remove_listener(self)
            self.active = False


class AuthService:
    """Sign up, sign in, sign out and session lookups."""

    def __init__(self, database: Database, session_ttl: timedelta = timedelta(days=7)):
        self.db = database
        self.session_ttl = session_ttl
        self._listeners: list[Subscription] = []
        self._listeners_lock = threading.Lock()

    # ---- subscriptions ----

    def on_auth_state_change(self, callback: Callable[[str, Optional[AuthSession]], None]) -> Subscription:
        """Register callback(event, session); call unsubscribe() on the result to stop."""
        subscription = Subscription(self, callback)
        with self._listeners_lock:
            self._listeners.append(subscription)
        return subscription

    def _remove_listener(self, subscription: Subscription) -> None:
        with self._listeners_lock:
            if subscription in self._listeners:
                self._listeners.remove(subscription)

    def _emit(self, event: str, session: Optional[AuthSession]) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for subscription in listeners:
            try:
                subscription.callback(event, session)
            except Exception:
                logger.exception(f"Auth listener failed on {event}")

    # ---- flows ----

    @staticmethod
    def validate_sign_up(email: str, password: str, username: str) -> None:
        if not email or not password or not username:
            raise ValidationError("Please fill in all fields")
        if len(username) < 3:
            raise ValidationError("Username must be at least 3 characters long")
        if len(username) > 30:
            raise ValidationError("Username must be at most 30 characters long")
        if not USERNAME_RE.match(username):
            raise ValidationError("Username can only contain letters, numbers and underscores")
        AuthService.validate_email(email)
        AuthService.validate_password(password)

    @staticmethod
    def validate_email(email: str) -> None:
        if not email or not EMAIL_RE.match(email):
            raise ValidationError("Email address is not valid")

    @staticmethod
    def validate_password(password: str) -> None:
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters long")

    def sign_up(self, email: str, password: str, username: str) -> dict:
        """Create an account. Returns the public profile."""
        self.validate_sign_up(email, password, username)
        username = username.lower()
        email = email.strip().lower()

        if self.db.get_user_by_username(username):
            raise AuthError("Username already taken. Please choose another one.")
        if self.db.get_user_by_email(email):
            raise AuthError("An account with this email already exists")

        user = self.db.create_user(
            user_id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=pwd_context.hash(password),
        )
        logger.info(f"Created account {username}")
        return user

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        if not email or not password:
            raise ValidationError("Please fill in all fields")

        user = self.db.get_user_by_email(email.strip(), include_secret=True)
        if not user or not pwd_context.verify(password, user["password_hash"]):
            raise AuthError("Invalid login credentials")
        user.pop("password_hash", None)

        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + self.session_ttl
        self.db.create_auth_session(token, user["id"], expires_at)

        session = AuthSession(token=token, user=user, expires_at=expires_at)
        logger.info(f"{user['username']} signed in")
        self._emit(SIGNED_IN, session)
        return session

    def sign_out(self, token: str) -> None:
        if self.db.delete_auth_session(token):
            self._emit(SIGNED_OUT, None)

    def get_session(self, token: Optional[str]) -> Optional[AuthSession]:
        """The live session for token, or None if unknown or expired."""
        if not token:
            return None
        row = self.db.get_auth_session(token)
        if not row:
            return None
        if row["expires_at"] <= datetime.now(timezone.utc):
            self.db.delete_auth_session(token)
            return None
        user = self.db.get_user(row["user_id"])
        if not user:
            return None
        return AuthSession(token=token, user=user, expires_at=row["expires_at"])

    def get_user(self, token: Optional[str]) -> dict:
        """The signed-in user for token. Raises AuthError if there is none."""
        session = self.get_session(token)
        if not session:
            raise AuthError("Not signed in")
        return session.user

    # ---- account settings ----

    def _reauthenticate(self, token: Optional[str], password: str, message: str) -> AuthSession:
        session = self.get_session(token)
        if not session:
            raise AuthError("Not signed in")
        stored = self.db.get_user_by_email(session.user["email"], include_secret=True)
        if not password or not stored or not pwd_context.verify(password, stored["password_hash"]):
            raise AuthError(message)
        return session

    def update_password(self, token: Optional[str], current_password: str, new_password: str) -> dict:
        """Change the password after checking the current one."""
        session = self._reauthenticate(token, current_password, "Current password is incorrect")
        self.validate_password(new_password)

        self.db.update_password_hash(session.user_id, pwd_context.hash(new_password))
        logger.info(f"{session.user['username']} changed their password")
        self._emit(USER_UPDATED, session)
        return session.user

    def update_email(self, token: Optional[str], password: str, new_email: str) -> dict:
        """Change the email address after checking the password. Returns the updated profile."""
        session = self._reauthenticate(token, password, "Password is incorrect")
        new_email = (new_email or "").strip().lower()
        self.validate_email(new_email)

        existing = self.db.get_user_by_email(new_email)
        if existing and existing["id"] != session.user_id:
            raise AuthError("An account with this email already exists")

        user = self.db.update_email(session.user_id, new_email)
        logger.info(f"{user['username']} changed their email")
        self._emit(USER_UPDATED, AuthSession(token=session.token, user=user, expires_at=session.expires_at))
        return user
