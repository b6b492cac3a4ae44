"""
API key management for devices and integrations.

Keys look like ``elk_<64 hex chars>``. Only the SHA-256 hash is stored; the
plaintext is handed back once, on create or regenerate.
"""

import hashlib
import secrets
from datetime import timedelta
from typing import List, Optional

from loguru import logger

from auth.auth_manager import auth_manager
from auth.roles import has_permission
from store.database import get_db_session
from store.models import ApiKey, utc_now

KEY_PREFIX = "elk_"

PERMISSION_TEMPLATES = {
    "read_only": {
        "name": "Read Only",
        "description": "View logs, dashboards and search",
        "permissions": ["log:read", "dashboard:read", "search:read"],
    },
    "log_writer": {
        "name": "Log Writer",
        "description": "Send and read logs",
        "permissions": ["log:write", "log:read"],
    },
    "full_access": {
        "name": "Full Access",
        "description": "Everything, including administration",
        "permissions": ["log:*", "dashboard:*", "search:*", "admin:*"],
    },
    "analytics": {
        "name": "Analytics",
        "description": "Search and analytics workloads",
        "permissions": ["log:read", "search:*", "analytics:*", "dashboard:read"],
    },
    "device_iot": {
        "name": "IoT Device",
        "description": "Write-only access for devices",
        "permissions": ["log:write"],
    },
}


def generate_key() -> str:
    return KEY_PREFIX + secrets.token_hex(32)


def hash_key(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class ApiKeyManager:
    """API key lifecycle: create, list, update, toggle, regenerate, validate"""

    # ==================== CREATE / READ ====================

    def create_key(self, name: str, permissions: Optional[List[str]] = None,
                   expires_in_days: Optional[int] = None, user: dict = None,
                   ip_address: str = None) -> dict:
        """Create a key; the response is the only place the plaintext appears"""
        if not name or not str(name).strip():
            return {"error": "API key name is required"}
        if expires_in_days is not None and expires_in_days <= 0:
            return {"error": "expires_in_days must be positive"}

        plaintext = generate_key()
        session = get_db_session()
        try:
            key = ApiKey(
                name=str(name).strip(),
                key_hash=hash_key(plaintext),
                key_prefix=plaintext[:8],
                permissions=list(permissions or []),
                user_id=(user or {}).get("userId"),
                enabled=True,
                expires_at=utc_now() + timedelta(days=expires_in_days) if expires_in_days else None,
            )
            session.add(key)
            session.commit()

            data = key.to_dict()
            data["key"] = plaintext

            auth_manager.log_activity(
                (user or {}).get("userId"), "api_key_created",
                resource_type="api_key", resource_id=key.id,
                details={"name": key.name, "permissions": key.permissions},
                ip_address=ip_address, username=(user or {}).get("username"),
            )
            logger.info(f"[API_KEY] Created key {key.id} ({key.name})")
            return {"success": True, "api_key": data}
        except Exception as e:
            logger.error(f"[API_KEY] Create error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def list_keys(self) -> List[dict]:
        session = get_db_session()
        try:
            keys = session.query(ApiKey).order_by(ApiKey.created_at.desc(), ApiKey.id.desc()).all()
            return [k.to_dict() for k in keys]
        finally:
            session.close()

    def get_key(self, key_id: int) -> Optional[dict]:
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            return key.to_dict() if key else None
        finally:
            session.close()

    # ==================== UPDATE ====================

    def update_key(self, key_id: int, is_active: bool, name: str = None,
                   permissions: Optional[List[str]] = None, user: dict = None,
                   ip_address: str = None) -> dict:
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            if not key:
                return {"error": "API key not found", "status": 404}

            key.enabled = bool(is_active)
            if name is not None:
                if not name.strip():
                    return {"error": "API key name cannot be empty"}
                key.name = name.strip()
            if permissions is not None:
                key.permissions = list(permissions)
            session.commit()

            auth_manager.log_activity(
                (user or {}).get("userId"), "api_key_updated",
                resource_type="api_key", resource_id=key.id,
                details={"enabled": key.enabled},
                ip_address=ip_address, username=(user or {}).get("username"),
            )
            return {"success": True, "api_key": key.to_dict()}
        except Exception as e:
            logger.error(f"[API_KEY] Update error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def toggle_key(self, key_id: int, user: dict = None, ip_address: str = None) -> dict:
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            if not key:
                return {"error": "API key not found", "status": 404}

            key.enabled = not key.enabled
            session.commit()

            auth_manager.log_activity(
                (user or {}).get("userId"), "api_key_toggled",
                resource_type="api_key", resource_id=key.id,
                details={"enabled": key.enabled},
                ip_address=ip_address, username=(user or {}).get("username"),
            )
            return {"success": True, "enabled": key.enabled, "api_key": key.to_dict()}
        except Exception as e:
            logger.error(f"[API_KEY] Toggle error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def regenerate_key(self, key_id: int, user: dict = None, ip_address: str = None) -> dict:
        """Replace the secret; the old key stops working immediately"""
        plaintext = generate_key()
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            if not key:
                return {"error": "API key not found", "status": 404}

            key.key_hash = hash_key(plaintext)
            key.key_prefix = plaintext[:8]
            key.usage_count = 0
            key.last_used = None
            session.commit()

            data = key.to_dict()
            data["key"] = plaintext

            auth_manager.log_activity(
                (user or {}).get("userId"), "api_key_regenerated",
                resource_type="api_key", resource_id=key.id,
                ip_address=ip_address, username=(user or {}).get("username"),
            )
            logger.info(f"[API_KEY] Regenerated key {key.id}")
            return {"success": True, "api_key": data}
        except Exception as e:
            logger.error(f"[API_KEY] Regenerate error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def delete_key(self, key_id: int, user: dict = None, ip_address: str = None) -> dict:
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            if not key:
                return {"error": "API key not found", "status": 404}

            name = key.name
            session.delete(key)
            session.commit()

            auth_manager.log_activity(
                (user or {}).get("userId"), "api_key_deleted",
                resource_type="api_key", resource_id=key_id,
                details={"name": name},
                ip_address=ip_address, username=(user or {}).get("username"),
            )
            return {"success": True, "message": "API key deleted successfully"}
        except Exception as e:
            logger.error(f"[API_KEY] Delete error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    # ==================== VALIDATION ====================

    def test_key(self, key_id: int) -> dict:
        session = get_db_session()
        try:
            key = session.get(ApiKey, key_id)
            if not key:
                return {"valid": False, "status": "not_found"}
            if key.is_expired():
                return {"valid": False, "status": "expired", "api_key": key.to_dict()}
            if not key.enabled:
                return {"valid": False, "status": "inactive", "api_key": key.to_dict()}
            return {"valid": True, "status": "active", "api_key": key.to_dict()}
        finally:
            session.close()

    def validate_key(self, plaintext: str, permission: Optional[str] = None) -> Optional[dict]:
        """
        Resolve a plaintext key; returns its row as a dict when enabled,
        unexpired and (optionally) granting `permission`. Records usage.
        """
        if not plaintext or not plaintext.startswith(KEY_PREFIX):
            return None

        session = get_db_session()
        try:
            key = session.query(ApiKey).filter_by(key_hash=hash_key(plaintext)).first()
            if not key or not key.enabled or key.is_expired():
                return None
            if permission and not has_permission(key.permissions, permission):
                logger.warning(f"[API_KEY] Key {key.id} lacks permission {permission}")
                return None

            key.usage_count = (key.usage_count or 0) + 1
            key.last_used = utc_now()
            session.commit()
            return key.to_dict()
        except Exception as e:
            logger.error(f"[API_KEY] Validation error: {type(e).__name__}: {e}")
            session.rollback()
            return None
        finally:
            session.close()

    @staticmethod
    def permission_templates() -> dict:
        return PERMISSION_TEMPLATES


# Global instance
api_key_manager = ApiKeyManager()
