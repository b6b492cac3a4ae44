from typing import Optional

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from auth import rbac_dependencies
from auth.rbac_dependencies import (
    get_optional_user,
    require_any_role,
    require_permission,
    require_role,
)
from auth.roles import get_role_permissions

TOKENS = {
    role: {"username": f"{role}-user", "role": role, "permissions": get_role_permissions(role)}
    for role in ("admin", "analyst", "viewer")
}


@pytest.fixture
def guarded(monkeypatch):
    monkeypatch.setattr(rbac_dependencies.auth_manager, "verify_token", lambda token: TOKENS.get(token))

    app = FastAPI()

    @app.get("/admin-only")
    async def admin_only(user: dict = Depends(require_role("admin"))):
        return {"user": user["username"]}

    @app.get("/staff")
    async def staff(user: dict = Depends(require_any_role("admin", "analyst"))):
        return {"user": user["username"]}

    @app.get("/edit-dashboards")
    async def edit_dashboards(user: dict = Depends(require_permission("dashboards:write"))):
        return {"user": user["username"]}

    @app.get("/read-logs")
    async def read_logs(user: dict = Depends(require_permission("logs:read"))):
        return {"user": user["username"]}

    @app.get("/whoami")
    async def whoami(user: Optional[dict] = Depends(get_optional_user)):
        return {"user": user["username"] if user else None}

    return TestClient(app)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.parametrize("path, allowed", [
    ("/admin-only", {"admin"}),
    ("/staff", {"admin", "analyst"}),
    ("/edit-dashboards", {"admin", "analyst"}),
    ("/read-logs", {"admin", "analyst", "viewer"}),
])
def test_role_and_permission_gates(guarded, path, allowed):
    for role in TOKENS:
        response = guarded.get(path, headers=_auth(role))
        assert response.status_code == (200 if role in allowed else 403), (path, role)


def test_missing_or_bad_token_is_401(guarded):
    assert guarded.get("/read-logs").status_code == 401
    assert guarded.get("/read-logs", headers={"Authorization": "Token viewer"}).status_code == 401
    assert guarded.get("/read-logs", headers=_auth("forged")).status_code == 401


def test_permission_denial_names_the_permission(guarded):
    response = guarded.get("/edit-dashboards", headers=_auth("viewer"))
    assert response.json()["detail"] == "Permission 'dashboards:write' required"


def test_optional_user(guarded):
    assert guarded.get("/whoami").json() == {"user": None}
    assert guarded.get("/whoami", headers=_auth("forged")).json() == {"user": None}
    assert guarded.get("/whoami", headers=_auth("analyst")).json() == {"user": "analyst-user"}
