"""
Session endpoints
"""

from fastapi import APIRouter, Depends, HTTPException

from .auth import PortalSystem, create_access_token, get_current_identity, get_portal_system, logger
from .schemas import LoginRequest
from ..identity import Identity
from ..logging_config import log_action


router = APIRouter()


@router.post("/login")
async def login(
    request: LoginRequest,
    system: PortalSystem = Depends(get_portal_system)
):
    """Authenticate against the auth provider and issue a bearer token"""
    try:
        identity = system.auth_provider.sign_in(request.email, request.password)
    except PermissionError:
        log_action(logger, "warning", "Failed login attempt", action="login_failed", resource="auth")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    log_action(logger, "info", "User authenticated successfully",
               user_id=identity.uid, action="login", resource="auth")
    return {
        "access_token": create_access_token(identity),
        "token_type": "bearer",
        "uid": identity.uid,
        "role": identity.role.value,
        "message": "Login successful"
    }


@router.get("/me")
async def whoami(identity: Identity = Depends(get_current_identity)):
    """Identity resolved for the current request"""
    return {"uid": identity.uid, "email": identity.email, "role": identity.role.value}
