"""
mcpanel - Authentication Module
=================================
Username/password login with server-side sessions for the web console.

Security model:
- Operator accounts stored in data/users.json with bcrypt password hashes
- A login issues a signed JWT (HS256) carrying {sub, username, sid, exp}
- The token travels in an HTTP-only cookie for browsers, or as a Bearer
  header for API clients
- The session id (sid) must also be present in the in-memory session table,
  so logout revokes a token immediately even though it is not yet expired
- All /api routes require a valid session; pages redirect to /login

Default accounts from config.yaml ("auth.default_users") are created only
when the user store is empty, so a fresh install is usable out of the box.
"""

import json
import logging
import os
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from mcpanel.errors import Unauthorized

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SESSION_COOKIE = "mcpanel_session"
MIN_PASSWORD_LENGTH = 4

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


@dataclass
class SessionInfo:
    """Identity of the operator making the current request."""
    user_id: int
    username: str
    session_id: str
    expires_at: datetime


class UserStore:
    """
    JSON-file credential store.

    File layout (data/users.json):
        {
          "jwt_secret": "...",
          "users": [{"id": 1, "username": "admin",
                     "password_hash": "$2b$...", "created_at": "..."}]
        }
    """

    def __init__(self, data_dir: str):
        self.auth_file = os.path.join(data_dir, "users.json")
        self._lock = threading.Lock()
        self._dummy_hash: bytes | None = None

    def list_users(self) -> list[dict]:
        return [
            {"id": u["id"], "username": u["username"], "created_at": u.get("created_at")}
            for u in self._load().get("users", [])
        ]

    def get_user(self, username: str) -> dict | None:
        for user in self._load().get("users", []):
            if user["username"] == username:
                return user
        return None

    def add_user(self, username: str, password: str) -> dict:
        """
        Create an operator account.

        Raises:
            ValueError: If the username is empty or taken, or the password is too short.
        """
        username = (username or "").strip()
        if not username:
            raise ValueError("Username is required.")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

        with self._lock:
            data = self._load()
            users = data.setdefault("users", [])
            if any(u["username"] == username for u in users):
                raise ValueError(f"User '{username}' already exists.")
            user = {
                "id": max((u["id"] for u in users), default=0) + 1,
                "username": username,
                "password_hash": bcrypt.hashpw(
                    password.encode("utf-8"), bcrypt.gensalt()
                ).decode("utf-8"),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
            users.append(user)
            self._save(data)
        return user

    def set_password(self, username: str, new_password: str) -> None:
        """
        Raises:
            ValueError: If the password is too short.
            KeyError:   If the user does not exist.
        """
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        with self._lock:
            data = self._load()
            for user in data.get("users", []):
                if user["username"] == username:
                    user["password_hash"] = bcrypt.hashpw(
                        new_password.encode("utf-8"), bcrypt.gensalt()
                    ).decode("utf-8")
                    user["updated_at"] = datetime.now(timezone.utc).isoformat()
                    self._save(data)
                    return
        raise KeyError(username)

    def authenticate(self, username: str, password: str) -> dict | None:
        """
        Check a username/password pair.

        bcrypt.checkpw runs even for unknown users, so response time does
        not reveal which usernames exist.

        Returns:
            The user record on success, None otherwise.
        """
        user = self.get_user(username or "")
        if user is None:
            bcrypt.checkpw((password or "").encode("utf-8"), self._dummy())
            return None
        if bcrypt.checkpw((password or "").encode("utf-8"),
                          user["password_hash"].encode("utf-8")):
            return user
        return None

    def ensure_default_users(self, seed: list[dict]) -> int:
        """Create the seed accounts if the store has no users yet."""
        if self._load().get("users"):
            return 0
        created = 0
        for entry in seed or []:
            try:
                self.add_user(entry.get("username", ""), entry.get("password", ""))
                created += 1
                logger.info("Default user '%s' created", entry.get("username"))
            except ValueError as e:
                logger.warning("Skipping default user: %s", e)
        return created

    def session_secret(self) -> str:
        """Signing secret for session tokens, generated on first use."""
        with self._lock:
            data = self._load()
            if not data.get("jwt_secret"):
                data["jwt_secret"] = secrets.token_urlsafe(48)
                self._save(data)
            return data["jwt_secret"]

    # -- Internal helpers ------------------------------------------------------

    def _dummy(self) -> bytes:
        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(b"mcpanel-dummy", bcrypt.gensalt())
        return self._dummy_hash

    def _load(self) -> dict:
        """Load users.json from disk (empty store if missing)."""
        if not os.path.exists(self.auth_file):
            return {}
        with open(self.auth_file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: dict) -> None:
        """Save data to users.json."""
        os.makedirs(os.path.dirname(self.auth_file), exist_ok=True)
        tmp = self.auth_file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, self.auth_file)


class AuthManager:
    """
    Issues, verifies and revokes operator sessions.

    Attributes:
        store:         The credential store.
        session_hours: Lifetime of a session token.
    """

    def __init__(self, store: UserStore, secret: str | None = None, session_hours: float = 24):
        self.store = store
        self.session_hours = session_hours
        self._secret = secret or store.session_secret()
        self._sessions: dict[str, SessionInfo] = {}

    @property
    def active_sessions(self) -> int:
        self._purge_expired()
        return len(self._sessions)

    def login(self, username: str, password: str) -> tuple[str, SessionInfo] | None:
        """
        Verify credentials and open a session.

        Returns:
            (token, session) on success, None on invalid credentials.
        """
        user = self.store.authenticate(username, password)
        if user is None:
            logger.warning("Failed login for '%s'", username)
            return None

        now = datetime.now(timezone.utc)
        session = SessionInfo(
            user_id=user["id"],
            username=user["username"],
            session_id=uuid.uuid4().hex,
            expires_at=now + timedelta(hours=self.session_hours),
        )
        payload = {
            "sub": str(session.user_id),
            "username": session.username,
            "sid": session.session_id,
            "iat": now,
            "exp": session.expires_at,
        }
        token = jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)
        self._sessions[session.session_id] = session
        logger.info("User '%s' logged in", session.username)
        return token, session

    def verify(self, token: str | None) -> SessionInfo | None:
        """Return the live session for a token, or None if invalid/revoked/expired."""
        if not token:
            return None
        try:
            payload = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return None
        session = self._sessions.get(payload.get("sid", ""))
        if session is None or session.expires_at <= datetime.now(timezone.utc):
            return None
        return session

    def logout(self, token: str | None) -> bool:
        """Destroy the session behind a token. Returns True if one was open."""
        session = self.verify(token)
        if session is None:
            return False
        self._sessions.pop(session.session_id, None)
        logger.info("User '%s' logged out", session.username)
        return True

    def token_from_request(self, request: Request,
                           credentials: HTTPAuthorizationCredentials | None = None) -> str | None:
        """Bearer token if one was sent, otherwise the session cookie."""
        if credentials is not None:
            return credentials.credentials
        header = request.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip()
        return request.cookies.get(SESSION_COOKIE)

    def current(self, request: Request) -> SessionInfo | None:
        """Session for a request (cookie or Bearer header), if any."""
        return self.verify(self.token_from_request(request))

    def _purge_expired(self) -> None:
        now = datetime.now(timezone.utc)
        for sid in [sid for sid, s in self._sessions.items() if s.expires_at <= now]:
            del self._sessions[sid]


def require_auth(auth_manager: AuthManager):
    """
    Create a FastAPI dependency that enforces an active session.

    Usage in routes:
        @router.get("/api/servers")
        async def list_servers(session: SessionInfo = Depends(require_auth(auth))): ...

    Returns:
        A dependency that yields the request's SessionInfo, or raises
        Unauthorized (rendered as 401 {"error": "Unauthorized"}).
    """
    async def _verify(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ) -> SessionInfo:
        token = auth_manager.token_from_request(request, credentials)
        session = auth_manager.verify(token)
        if session is None:
            raise Unauthorized()
        request.state.session = session
        return session

    return _verify
