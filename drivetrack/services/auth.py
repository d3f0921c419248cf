"""
Client for the hosted auth service (email/password).

Provides:
- sign_up() / sign_in() / sign_out()
- current_session(): the live session, refreshed when expired, or None
- subscribe(): auth state change listeners (e.g. stop tracking on sign-out)

The session can be persisted to a JSON file so CLI runs stay signed in.
"""
import json
import os
import time
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Optional

import httpx
import structlog

from drivetrack.exceptions import AuthError
from drivetrack.models import AuthSession

logger = structlog.get_logger("auth")

AuthListener = Callable[[str, Optional[AuthSession]], None]

# Refresh a little before the backend would reject the token.
EXPIRY_MARGIN_S = 30


def _session_from_payload(payload: dict) -> Optional[AuthSession]:
    token = payload.get("access_token")
    user = payload.get("user") or {}
    if not token or not user.get("id"):
        return None
    expires_at = payload.get("expires_at")
    if expires_at is None and payload.get("expires_in"):
        expires_at = int(time.time()) + int(payload["expires_in"])
    return AuthSession(
        access_token=token,
        user_id=str(user["id"]),
        email=user.get("email"),
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    return (
        body.get("error_description")
        or body.get("msg")
        or body.get("message")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )


class AuthClient:
    """Email/password auth against the hosted backend's /auth/v1 API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session_file: Optional[str] = None,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._session_file = Path(session_file).expanduser() if session_file else None
        self._session: Optional[AuthSession] = None
        self._listeners: list[AuthListener] = []
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
        )
        self._load_session()

    # ============ Session storage ============

    def _load_session(self) -> None:
        if self._session_file is None or not self._session_file.exists():
            return
        try:
            data = json.loads(self._session_file.read_text())
            self._session = AuthSession(**data)
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable session file", path=str(self._session_file), error=str(e))

    def _store_session(self) -> None:
        if self._session_file is None:
            return
        if self._session is None:
            if self._session_file.exists():
                self._session_file.unlink()
            return
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        self._session_file.write_text(json.dumps(asdict(self._session)))
        os.chmod(self._session_file, 0o600)

    def _set_session(self, event: str, session: Optional[AuthSession]) -> None:
        self._session = session
        self._store_session()
        for listener in list(self._listeners):
            listener(event, session)

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register for (event, session) callbacks. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ============ API calls ============

    def _headers(self, token: Optional[str] = None) -> dict[str, str]:
        headers = {"apikey": self._api_key, "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, path: str, body: dict, token: Optional[str] = None) -> dict:
        try:
            response = await self._client.post(path, json=body, headers=self._headers(token))
        except httpx.HTTPError as e:
            raise AuthError(f"Auth service unreachable: {e}") from e
        if response.status_code >= 400:
            raise AuthError(_error_message(response), status_code=response.status_code)
        return response.json() if response.content else {}

    async def sign_up(self, email: str, password: str) -> Optional[AuthSession]:
        """
        Create an account.

        Returns the new session when the backend signs the user in right
        away, or None when it requires email confirmation first.
        """
        payload = await self._post("/auth/v1/signup", {"email": email, "password": password})
        session = _session_from_payload(payload)
        logger.info("Account created", email=email, confirmed=session is not None)
        if session:
            self._set_session("SIGNED_IN", session)
        return session

    async def sign_in(self, email: str, password: str) -> AuthSession:
        payload = await self._post(
            "/auth/v1/token?grant_type=password", {"email": email, "password": password}
        )
        session = _session_from_payload(payload)
        if session is None:
            raise AuthError("Auth service returned no session")
        logger.info("Signed in", user_id=session.user_id)
        self._set_session("SIGNED_IN", session)
        return session

    async def sign_out(self) -> None:
        """Revoke the session server-side and forget it locally (even if revocation fails)."""
        session = self._session
        if session is None:
            return
        try:
            await self._post("/auth/v1/logout", {}, token=session.access_token)
        finally:
            self._set_session("SIGNED_OUT", None)
            logger.info("Signed out", user_id=session.user_id)

    async def _refresh(self, session: AuthSession) -> Optional[AuthSession]:
        try:
            payload = await self._post(
                "/auth/v1/token?grant_type=refresh_token",
                {"refresh_token": session.refresh_token},
            )
        except AuthError as e:
            logger.warning("Session refresh failed", error=str(e))
            return None
        return _session_from_payload(payload)

    async def current_session(self) -> Optional[AuthSession]:
        """The signed-in session, refreshed if it has expired, else None."""
        session = self._session
        if session is None:
            return None
        if session.expires_at is None or session.expires_at - EXPIRY_MARGIN_S > time.time():
            return session
        if not session.refresh_token:
            self._set_session("SIGNED_OUT", None)
            return None

        refreshed = await self._refresh(session)
        self._set_session("TOKEN_REFRESHED" if refreshed else "SIGNED_OUT", refreshed)
        return refreshed

    @property
    def access_token(self) -> Optional[str]:
        """Token of the cached session, without refreshing."""
        return self._session.access_token if self._session else None

    @property
    def user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None

    async def close(self) -> None:
        await self._client.aclose()


class StaticAuth:
    """Auth collaborator with a fixed session, for offline/local use."""

    def __init__(self, session: Optional[AuthSession] = None):
        self._session = session

    async def current_session(self) -> Optional[AuthSession]:
        return self._session

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    @property
    def user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None
