"""
FastAPI authentication endpoints.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from auth.auth_manager import auth_manager
from auth.rbac_dependencies import verify_jwt_token

router = APIRouter(prefix="/api/auth", tags=["auth"])

# ==================== REQUEST MODELS ====================

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

# ==================== HELPER FUNCTIONS ====================

def get_client_ip(request: Request) -> str:
    """Extract client IP from request"""
    if request.client:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str:
    """Extract User-Agent from request"""
    return request.headers.get("user-agent", "unknown")

# ==================== LOGIN / LOGOUT ====================

@router.post("/login")
async def login(data: LoginRequest, request: Request):
    """Login with username and password; returns a bearer token."""
    try:
        result = auth_manager.login(
            data.username,
            data.password,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )

        if "error" in result:
            raise HTTPException(status_code=401, detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Login error: {e}")
        raise HTTPException(status_code=500, detail="Login failed")


@router.post("/logout")
async def logout(request: Request, authorization: str = Header(None)):
    """Logout: end the session and revoke the token."""
    try:
        if not authorization or "Bearer " not in authorization:
            raise HTTPException(status_code=401, detail="Missing authorization token")

        token = authorization.replace("Bearer ", "").strip()
        result = auth_manager.logout(
            token,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )

        if "error" in result:
            raise HTTPException(status_code=401, detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Logout error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/me")
async def me(user: dict = Depends(verify_jwt_token)):
    """Current user profile and permissions."""
    profile = auth_manager.get_user(user["userId"])
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")

    return {
        "success": True,
        "user": profile,
        "permissions": user.get("permissions", []),
    }


@router.post("/change-password")
async def change_password(data: ChangePasswordRequest, request: Request,
                          user: dict = Depends(verify_jwt_token)):
    try:
        result = auth_manager.change_password(
            user["userId"],
            data.current_password,
            data.new_password,
            ip_address=get_client_ip(request),
        )

        if "error" in result:
            raise HTTPException(status_code=result.get("status", 400), detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Change password error: {e}")
        raise HTTPException(status_code=500, detail=str(e))
