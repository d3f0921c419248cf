"""
Shared FastAPI dependencies.
"""
from fastapi import HTTPException, Request

from drivetrack.services.auth import AuthClient
from drivetrack.services.runtime import TrackerRuntime


def get_runtime(request: Request) -> TrackerRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Tracker is not initialized")
    return runtime


def get_auth_client(request: Request) -> AuthClient:
    runtime = get_runtime(request)
    if not isinstance(runtime.auth, AuthClient):
        raise HTTPException(status_code=400, detail="Hosted authentication is not configured")
    return runtime.auth
