"""
User management endpoints (admin only).

Exposed endpoints:
- GET /api/users/roles - Available roles and permissions
- GET /api/users - List users
- POST /api/users - Create user
- GET /api/users/{id} - Get user
- PUT /api/users/{id} - Update user
- DELETE /api/users/{id} - Delete user
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, EmailStr, Field

from auth.auth_manager import auth_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin
from auth.roles import list_roles

router = APIRouter(prefix="/api/users", tags=["users"])


class CreateUserRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: str = Field("viewer", description="admin, analyst or viewer")


class UpdateUserRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    active: Optional[bool] = None
    password: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


@router.get("/roles")
async def get_roles(user: dict = Depends(require_admin)):
    return {"success": True, "roles": list_roles()}


@router.get("")
async def list_users(user: dict = Depends(require_admin)):
    users = auth_manager.list_users()
    return {"success": True, "users": users, "total": len(users)}


@router.post("")
async def create_user(data: CreateUserRequest, request: Request, user: dict = Depends(require_admin)):
    try:
        result = auth_manager.create_user(
            username=data.username,
            email=data.email,
            password=data.password,
            role=data.role,
            created_by=user,
            ip_address=get_client_ip(request),
        )

        if "error" in result:
            raise HTTPException(status_code=400, detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create user error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{user_id}")
async def get_user(user_id: int, user: dict = Depends(require_admin)):
    profile = auth_manager.get_user(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "user": profile}


@router.put("/{user_id}")
async def update_user(user_id: int, data: UpdateUserRequest, request: Request,
                      user: dict = Depends(require_admin)):
    try:
        result = auth_manager.update_user(
            user_id,
            data.model_dump(exclude_unset=True),
            updated_by=user,
            ip_address=get_client_ip(request),
        )

        if "error" in result:
            raise HTTPException(status_code=result.get("status", 400), detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update user error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{user_id}")
async def delete_user(user_id: int, request: Request, user: dict = Depends(require_admin)):
    try:
        result = auth_manager.delete_user(user_id, deleted_by=user, ip_address=get_client_ip(request))

        if "error" in result:
            raise HTTPException(status_code=result.get("status", 400), detail=result["error"])

        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Delete user error: {e}")
        raise HTTPException(status_code=500, detail=str(e))
