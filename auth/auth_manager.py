"""
Authentication manager: bcrypt password hashing, JWT sessions, console user
management and activity logging.
"""

import os
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt
from loguru import logger

from auth.cache_manager import cache_manager
from auth.roles import get_role_permissions, validate_role
from store.database import get_db_session
from store.models import User, UserSession, utc_now
from store.repository import ActivityRepository

USER_UPDATE_FIELDS = ("username", "email", "role", "active", "preferences", "password")
MIN_PASSWORD_LENGTH = 8


class AuthManager:
    """Authentication manager"""

    def __init__(self):
        self.jwt_secret = os.getenv("JWT_SECRET")
        if not self.jwt_secret:
            raise ValueError("JWT_SECRET environment variable not set. Cannot initialize auth system.")
        if len(self.jwt_secret) < 32:
            logger.warning("JWT_SECRET is less than 32 bytes - use a stronger secret!")
        self.jwt_expiry = int(os.getenv("JWT_EXPIRY_HOURS", "24")) * 3600
        logger.info("AuthManager initialized")

    # ==================== PASSWORD HASHING ====================

    def _hash_password(self, password: str) -> str:
        """Hash password using bcrypt"""
        password_bytes = password.encode("utf-8")[:72]
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password_bytes, salt).decode("utf-8")

    def _verify_password(self, password: str, password_hash: str) -> bool:
        """Verify password against hash"""
        try:
            if not password_hash:
                logger.error("[VERIFY] Password hash is None or empty")
                return False

            password_bytes = password.encode("utf-8")[:72]
            hash_bytes = password_hash if isinstance(password_hash, bytes) else password_hash.encode("utf-8")
            return bcrypt.checkpw(password_bytes, hash_bytes)
        except Exception as e:
            logger.error(f"[VERIFY] Exception in password verification: {type(e).__name__}: {e}")
            return False

    # ==================== LOGIN / LOGOUT ====================

    def login(self, username: str, password: str, ip_address: str = None, user_agent: str = None) -> dict:
        """Login user, persist a session and return an access token"""
        session = get_db_session()
        try:
            logger.info(f"[LOGIN] Starting login for username: {username}")

            user = session.query(User).filter_by(username=username).first()
            if not user or not self._verify_password(password, user.password_hash):
                attempts = cache_manager.record_login_failure(ip_address or "unknown")
                logger.warning(f"[LOGIN] Invalid credentials for: {username} ({attempts} recent failures)")
                self.log_activity(
                    user.id if user else None, "login_failed",
                    resource_type="auth",
                    details={"username": username, "attempts": attempts},
                    ip_address=ip_address, user_agent=user_agent,
                    status="failure", username=username,
                )
                return {"error": "Invalid username or password"}

            if not user.active:
                logger.warning(f"[LOGIN] Account is disabled for: {username}")
                self.log_activity(
                    user.id, "login_failed", resource_type="auth",
                    details={"username": username, "reason": "account_disabled"},
                    ip_address=ip_address, user_agent=user_agent,
                    status="failure", username=username,
                )
                return {"error": "Account is disabled"}

            now = utc_now()
            expires_at = now + timedelta(seconds=self.jwt_expiry)
            token_id = secrets.token_urlsafe(24)

            access_token = jwt.encode(
                {
                    "sub": str(user.id),
                    "userId": user.id,
                    "username": user.username,
                    "role": user.role,
                    "jti": token_id,
                    "iat": now,
                    "exp": expires_at,
                },
                self.jwt_secret,
                algorithm="HS256"
            )

            session.add(UserSession(
                user_id=user.id,
                session_token=token_id,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
                expires_at=expires_at,
                last_activity=now,
                is_active=True,
            ))
            user.last_login = now
            session.commit()
            cache_manager.clear_login_failures(ip_address or "unknown")

            self.log_activity(
                user.id, "user_login", resource_type="auth",
                details={"role": user.role},
                ip_address=ip_address, user_agent=user_agent, username=user.username,
            )
            logger.info(f"[LOGIN] User logged in successfully: {username}")

            return {
                "success": True,
                "token": access_token,
                "token_type": "bearer",
                "expires_in": self.jwt_expiry,
                "user": user.to_dict(),
            }
        except Exception as e:
            logger.error(f"[LOGIN] Login error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def logout(self, token: str, ip_address: str = None, user_agent: str = None) -> dict:
        """End the session behind a token and revoke the token"""
        payload = self._decode(token)
        if not payload:
            return {"error": "Invalid or expired token"}

        session = get_db_session()
        try:
            row = session.query(UserSession).filter_by(session_token=payload["jti"]).first()
            if row:
                row.is_active = False
                row.last_activity = utc_now()
                session.commit()

            remaining = int(payload["exp"] - utc_now().timestamp())
            cache_manager.blacklist_token(payload["jti"], ttl=max(remaining, 1))

            self.log_activity(
                payload.get("userId"), "user_logout", resource_type="auth",
                ip_address=ip_address, user_agent=user_agent, username=payload.get("username"),
            )
            logger.info(f"[LOGOUT] User logged out: {payload.get('username')}")
            return {"success": True, "message": "Logged out successfully"}
        except Exception as e:
            logger.error(f"[LOGOUT] Logout error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def _decode(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            logger.warning("[TOKEN_VERIFY] Token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"[TOKEN_VERIFY] Invalid token: {e}")
            return None

    def verify_token(self, token: str) -> Optional[dict]:
        """Verify JWT token and its session; return payload or None"""
        payload = self._decode(token)
        if not payload or not payload.get("jti"):
            return None

        if cache_manager.is_token_blacklisted(payload["jti"]):
            logger.warning("[TOKEN_VERIFY] Token has been revoked")
            return None

        session = get_db_session()
        try:
            row = session.query(UserSession).filter_by(session_token=payload["jti"]).first()
            if not row or not row.is_active or row.expires_at <= utc_now():
                logger.warning(f"[TOKEN_VERIFY] Session inactive for user: {payload.get('username')}")
                return None

            user = session.get(User, row.user_id)
            if not user or not user.active:
                return None

            # Role changes take effect without a new login
            payload["role"] = user.role
            payload["permissions"] = get_role_permissions(user.role)
            return payload
        finally:
            session.close()

    def cleanup_expired_sessions(self) -> int:
        session = get_db_session()
        try:
            deleted = (
                session.query(UserSession)
                .filter(UserSession.expires_at <= utc_now())
                .delete(synchronize_session=False)
            )
            session.commit()
            if deleted:
                logger.info(f"[SESSIONS] Removed {deleted} expired sessions")
            return deleted
        finally:
            session.close()

    # ==================== USERS ====================

    def create_user(self, username: str, email: str, password: str, role: str = "viewer",
                    created_by: dict = None, ip_address: str = None) -> dict:
        """Create a console user"""
        session = get_db_session()
        try:
            logger.info(f"[USER_CREATE] Creating user: {username}")

            if not username or not email or not password:
                return {"error": "Username, email, and password are required"}

            if not validate_role(role):
                return {"error": f"Invalid role: {role}"}

            if len(password) < MIN_PASSWORD_LENGTH:
                return {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}

            if session.query(User).filter_by(username=username).first():
                logger.warning(f"[USER_CREATE] Username already exists: {username}")
                return {"error": "Username already exists"}

            user = User(
                username=username,
                email=email,
                password_hash=self._hash_password(password),
                role=role,
                active=True,
                created_at=utc_now(),
            )
            session.add(user)
            session.commit()

            self.log_activity(
                (created_by or {}).get("userId"), "user_created",
                resource_type="user", resource_id=user.id,
                details={"username": username, "role": role},
                ip_address=ip_address, username=(created_by or {}).get("username"),
            )
            logger.info(f"[USER_CREATE] User created: {username} ({role})")
            return {"success": True, "user": user.to_dict()}
        except Exception as e:
            logger.error(f"[USER_CREATE] Error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def list_users(self) -> list:
        session = get_db_session()
        try:
            users = session.query(User).order_by(User.created_at.desc(), User.id.desc()).all()
            return [u.to_dict() for u in users]
        finally:
            session.close()

    def get_user(self, user_id: int) -> Optional[dict]:
        session = get_db_session()
        try:
            user = session.get(User, user_id)
            return user.to_dict() if user else None
        finally:
            session.close()

    def _active_admin_count(self, session) -> int:
        return session.query(User).filter_by(role="admin", active=True).count()

    def update_user(self, user_id: int, updates: Dict[str, Any], updated_by: dict = None,
                    ip_address: str = None) -> dict:
        """Update whitelisted user fields"""
        session = get_db_session()
        try:
            user = session.get(User, user_id)
            if not user:
                return {"error": "User not found", "status": 404}

            fields = {k: v for k, v in updates.items() if k in USER_UPDATE_FIELDS and v is not None}
            if not fields:
                return {"error": "No valid fields provided for update"}

            if "role" in fields and not validate_role(fields["role"]):
                return {"error": f"Invalid role: {fields['role']}"}

            demoting = fields.get("role", user.role) != "admin" or fields.get("active", user.active) is False
            if user.role == "admin" and user.active and demoting and self._active_admin_count(session) <= 1:
                return {"error": "Cannot demote or disable the last active admin"}

            if "username" in fields and fields["username"] != user.username:
                if session.query(User).filter_by(username=fields["username"]).first():
                    return {"error": "Username already exists"}

            if "password" in fields:
                if len(fields["password"]) < MIN_PASSWORD_LENGTH:
                    return {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
                user.password_hash = self._hash_password(fields.pop("password"))

            for key, value in fields.items():
                setattr(user, key, value)
            session.commit()

            self.log_activity(
                (updated_by or {}).get("userId"), "user_updated",
                resource_type="user", resource_id=user.id,
                details={"fields": sorted(k for k in updates if k in USER_UPDATE_FIELDS and k != "password")},
                ip_address=ip_address, username=(updated_by or {}).get("username"),
            )
            return {"success": True, "user": user.to_dict()}
        except Exception as e:
            logger.error(f"[USER_UPDATE] Error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def delete_user(self, user_id: int, deleted_by: dict = None, ip_address: str = None) -> dict:
        session = get_db_session()
        try:
            user = session.get(User, user_id)
            if not user:
                return {"error": "User not found", "status": 404}

            if deleted_by and deleted_by.get("userId") == user.id:
                return {"error": "Cannot delete your own account"}

            if user.role == "admin" and user.active and self._active_admin_count(session) <= 1:
                return {"error": "Cannot delete the last active admin"}

            username = user.username
            session.delete(user)
            session.commit()

            self.log_activity(
                (deleted_by or {}).get("userId"), "user_deleted",
                resource_type="user", resource_id=user_id,
                details={"username": username},
                ip_address=ip_address, username=(deleted_by or {}).get("username"),
            )
            logger.info(f"[USER_DELETE] User deleted: {username}")
            return {"success": True, "message": "User deleted successfully"}
        except Exception as e:
            logger.error(f"[USER_DELETE] Error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def change_password(self, user_id: int, current_password: str, new_password: str,
                        ip_address: str = None) -> dict:
        session = get_db_session()
        try:
            user = session.get(User, user_id)
            if not user:
                return {"error": "User not found", "status": 404}

            if not self._verify_password(current_password, user.password_hash):
                return {"error": "Current password is incorrect"}

            if len(new_password) < MIN_PASSWORD_LENGTH:
                return {"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}

            user.password_hash = self._hash_password(new_password)
            session.commit()

            self.log_activity(
                user.id, "password_changed", resource_type="user", resource_id=user.id,
                ip_address=ip_address, username=user.username,
            )
            return {"success": True, "message": "Password changed successfully"}
        except Exception as e:
            logger.error(f"[PASSWORD] Error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def ensure_default_admin(self) -> Optional[dict]:
        """Create the first admin from ADMIN_* env when none exists"""
        session = get_db_session()
        try:
            if session.query(User).filter_by(role="admin").count() > 0:
                return None
        finally:
            session.close()

        username = os.getenv("ADMIN_USERNAME", "admin")
        password = os.getenv("ADMIN_PASSWORD")
        if not password:
            password = "ChangeMe123!"
            logger.warning("[BOOTSTRAP] ADMIN_PASSWORD not set - using default password, change it now!")

        result = self.create_user(
            username=username,
            email=os.getenv("ADMIN_EMAIL", "admin@localhost.localdomain"),
            password=password,
            role="admin",
        )
        if "error" in result:
            logger.error(f"[BOOTSTRAP] Could not create admin user: {result['error']}")
            return None
        logger.info(f"[BOOTSTRAP] Created admin user: {username}")
        return result["user"]

    # ==================== ACTIVITY LOGGING ====================

    def log_activity(self, user_id: Optional[int], action: str, resource_type: str = None,
                     resource_id: Any = None, details: dict = None, ip_address: str = None,
                     user_agent: str = None, status: str = "success", username: str = None):
        """Write an activity (audit) row; failures are logged, not raised"""
        session = get_db_session()
        try:
            ActivityRepository.log(
                session,
                action=action,
                user_id=user_id,
                username=username,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
                status=status,
            )
            logger.debug(f"[AUDIT] {action} for user {user_id} - {status}")
        except Exception as e:
            logger.error(f"[AUDIT] Error logging activity: {type(e).__name__}: {e}")
            session.rollback()
        finally:
            session.close()


# Global instance
auth_manager = AuthManager()
