"""
Account routes: sign-up, sign-in, sign-out and the current session.
"""
from fastapi import APIRouter, Depends, HTTPException

from drivetrack.models import AuthSession
from drivetrack.routes.deps import get_auth_client, get_runtime
from drivetrack.schemas import Credentials, SessionResponse, SignupRequest, SignupResponse
from drivetrack.services.auth import AuthClient
from drivetrack.services.notifications import NotificationKind
from drivetrack.services.runtime import TrackerRuntime

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _session_out(session: AuthSession) -> SessionResponse:
    return SessionResponse(
        user_id=session.user_id,
        email=session.email,
        expires_at=session.expires_at,
    )


@router.post("/signup", response_model=SignupResponse)
async def signup(
    data: SignupRequest,
    auth: AuthClient = Depends(get_auth_client),
    runtime: TrackerRuntime = Depends(get_runtime),
):
    session = await auth.sign_up(data.email, data.password)
    runtime.notifications.notify(
        NotificationKind.INFO,
        "Account created",
        "Please check your email to confirm your account." if session is None
        else "You are now signed in.",
    )
    return SignupResponse(
        confirmation_required=session is None,
        session=_session_out(session) if session else None,
    )


@router.post("/login", response_model=SessionResponse)
async def login(data: Credentials, auth: AuthClient = Depends(get_auth_client)):
    session = await auth.sign_in(data.email, data.password)
    return _session_out(session)


@router.post("/logout")
async def logout(
    auth: AuthClient = Depends(get_auth_client),
    runtime: TrackerRuntime = Depends(get_runtime),
):
    await auth.sign_out()
    runtime.notifications.notify(
        NotificationKind.INFO, "Logged out", "You have been successfully logged out."
    )
    return {"status": "signed_out"}


@router.get("/session", response_model=SessionResponse)
async def current_session(runtime: TrackerRuntime = Depends(get_runtime)):
    session = await runtime.auth.current_session()
    if session is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return _session_out(session)
