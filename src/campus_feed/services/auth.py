"""Identity & Session Service client and the explicit session context.

The session is never read from ambient global state: a ``SessionContext`` is
created at start-up, passed to every gateway and reconciler that needs the
viewer, and cleared at sign-out.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import httpx
from jose import JWTError, jwt

from campus_feed.core.errors import AuthError, NotAuthenticatedError
from campus_feed.core.settings import settings
from campus_feed.db.time import utcnow
from campus_feed.services.http import HTTP_BAD_REQUEST, HttpService, RequestParams

logger = logging.getLogger(__name__)

# Refresh a little before the access token actually expires.
EXPIRY_MARGIN = timedelta(seconds=30)


class SessionEvent(Enum):
    """Session state changes observable through ``SessionContext.subscribe``."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class Identity:
    """The authenticated viewer."""

    id: str
    email: str


@dataclass(frozen=True)
class AuthSession:
    """Tokens issued by the identity service for one signed-in identity."""

    access_token: str
    refresh_token: str | None
    identity: Identity
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at - EXPIRY_MARGIN

    @classmethod
    def from_token_response(cls, payload: Mapping[str, Any]) -> AuthSession:
        """Build a session from a token endpoint response.

        Missing identity fields and the expiry fall back to the access
        token's own claims.
        """
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError("Token response did not include an access token")

        claims = read_claims(access_token)
        user = payload.get("user") or {}
        user_id = user.get("id") or claims.get("sub")
        if not user_id:
            raise AuthError("Token response did not identify the user")

        expires_at: datetime | None = None
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), UTC)
        elif payload.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(payload["expires_in"]))
        elif claims.get("exp"):
            expires_at = datetime.fromtimestamp(int(claims["exp"]), UTC)

        email = user.get("email") or claims.get("email") or ""
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            identity=Identity(id=str(user_id), email=str(email)),
            expires_at=expires_at,
        )


def read_claims(token: str) -> dict[str, Any]:
    """Return the token's claims without verifying the signature.

    The identity service verifies tokens; the client only reads them.
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        logger.debug("Access token is not a readable JWT")
        return {}


SessionListener = Callable[[SessionEvent, AuthSession | None], None]


class SessionContext:
    """Holder of the current session with subscribe/refresh lifecycle."""

    def __init__(self, session: AuthSession | None = None) -> None:
        self._session = session
        self._listeners: list[SessionListener] = []

    @property
    def current(self) -> AuthSession | None:
        return self._session

    @property
    def identity(self) -> Identity | None:
        return self._session.identity if self._session else None

    @property
    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def require_identity(self) -> Identity:
        """Return the viewer or raise ``NotAuthenticatedError``."""
        if self._session is None:
            raise NotAuthenticatedError("Please sign in to continue")
        return self._session.identity

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set(self, session: AuthSession, event: SessionEvent = SessionEvent.SIGNED_IN) -> None:
        self._session = session
        self._notify(event)

    def clear(self) -> None:
        if self._session is None:
            return
        self._session = None
        self._notify(SessionEvent.SIGNED_OUT)

    def _notify(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self._session)
            except Exception:
                logger.exception("Session listener failed for %s", event.value)


class AuthClient(HttpService):
    """HTTP client for the hosted identity service."""

    error_class = AuthError

    def __init__(
        self,
        session: SessionContext,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.auth_url,
            api_key=api_key,
            session=session,
            transport=transport,
        )
        self.context = session

    async def sign_up(self, email: str, password: str) -> AuthSession | None:
        """Create an account.

        Returns the new session, or None when the project requires email
        confirmation before the first sign-in.
        """
        if not email.strip() or not password:
            raise AuthError("Email and password are required")

        response = await self._request(
            RequestParams(
                method="POST",
                path="/signup",
                json_data={"email": email.strip(), "password": password},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise self._error_from_response(response, "Sign-up")

        payload = response.json()
        if not payload.get("access_token"):
            logger.info("Sign-up for %s is awaiting email confirmation", email)
            return None

        auth_session = AuthSession.from_token_response(payload)
        self.context.set(auth_session, SessionEvent.SIGNED_IN)
        return auth_session

    async def sign_in(self, email: str, password: str) -> AuthSession:
        """Sign in with email and password."""
        if not email.strip() or not password:
            raise AuthError("Email and password are required")

        response = await self._request(
            RequestParams(
                method="POST",
                path="/token",
                params={"grant_type": "password"},
                json_data={"email": email.strip(), "password": password},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise self._error_from_response(response, "Sign-in")

        auth_session = AuthSession.from_token_response(response.json())
        self.context.set(auth_session, SessionEvent.SIGNED_IN)
        logger.info("Signed in as %s", auth_session.identity.email)
        return auth_session

    async def sign_out(self) -> None:
        """Revoke the current session and clear the context."""
        if not self.context.is_authenticated:
            return
        try:
            response = await self._request(RequestParams(method="POST", path="/logout"))
            if response.status_code >= HTTP_BAD_REQUEST:
                logger.warning("Sign-out returned %s; clearing local session", response.status_code)
        finally:
            self.context.clear()

    async def get_current_user(self) -> Identity | None:
        """Return the identity behind the current token, or None when signed out."""
        if not self.context.is_authenticated:
            return None

        response = await self._request(RequestParams(method="GET", path="/user"))
        if response.status_code >= HTTP_BAD_REQUEST:
            raise self._error_from_response(response, "Fetching the current user")

        payload = response.json()
        return Identity(id=str(payload["id"]), email=str(payload.get("email") or ""))

    async def refresh_session(self) -> AuthSession:
        """Exchange the refresh token for a new session."""
        current = self.context.current
        if current is None or not current.refresh_token:
            raise NotAuthenticatedError("Please sign in to continue")

        response = await self._request(
            RequestParams(
                method="POST",
                path="/token",
                params={"grant_type": "refresh_token"},
                json_data={"refresh_token": current.refresh_token},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise self._error_from_response(response, "Session refresh")

        auth_session = AuthSession.from_token_response(response.json())
        self.context.set(auth_session, SessionEvent.TOKEN_REFRESHED)
        return auth_session

    async def ensure_fresh(self) -> AuthSession | None:
        """Refresh the session if its access token is about to expire."""
        current = self.context.current
        if current is not None and current.is_expired():
            return await self.refresh_session()
        return current
