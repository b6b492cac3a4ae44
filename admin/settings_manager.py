"""
Runtime-editable platform settings.

Defaults live in DEFAULT_SETTINGS; rows in system_settings (keyed
``category.name``) override them. Values must keep the type of their default.
"""

import copy
from typing import Any, Dict, List, Optional

from loguru import logger

from auth.auth_manager import auth_manager
from auth.cache_manager import cache_manager
from store.database import get_db_session
from store.models import SystemSetting, utc_now

SETTINGS_EXPORT_VERSION = "1.0"
CACHE_KEY = "settings:all"

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "system": {
        "retention_days": 30,
        "max_log_size": "10MB",
        "log_level": "info",
        "timezone": "UTC",
        "auto_archive": True,
        "compression_enabled": True,
    },
    "alerts": {
        "email_enabled": True,
        "webhook_enabled": True,
        "slack_enabled": False,
        "discord_enabled": False,
    },
    "ingestion": {
        "syslog_enabled": True,
        "gelf_enabled": True,
        "beats_enabled": True,
        "fluent_enabled": True,
        "rate_limit": 1000,
        "max_message_size": "1MB",
    },
    "security": {
        "auth_enabled": True,
        "jwt_expiry": "24h",
        "rate_limiting": True,
        "audit_logging": True,
        "password_policy": "strong",
    },
    "performance": {
        "cache_enabled": True,
        "cache_ttl": 300,
        "streaming_enabled": True,
        "compression": True,
        "indexing": "auto",
    },
}


def _type_error(key: str, default: Any, value: Any) -> Optional[str]:
    """Return an error message when value does not match the default's type"""
    expected = type(default)
    if expected is bool:
        ok = isinstance(value, bool)
    elif expected is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, expected)
    if ok:
        return None
    return f"Invalid type for {key}: expected {expected.__name__}, got {type(value).__name__}"


class SettingsManager:
    """Read, validate and persist settings overrides"""

    # ==================== READ ====================

    def _stored(self) -> Dict[str, Any]:
        session = get_db_session()
        try:
            return {row.setting_key: row.setting_value for row in session.query(SystemSetting).all()}
        finally:
            session.close()

    def get_all(self) -> Dict[str, Dict[str, Any]]:
        """All settings merged with defaults, grouped by category"""
        cached = cache_manager.get(CACHE_KEY)
        if cached is not None:
            return copy.deepcopy(cached)

        merged = copy.deepcopy(DEFAULT_SETTINGS)
        for key, value in self._stored().items():
            category, _, name = key.partition(".")
            if category in merged and name in merged[category]:
                merged[category][name] = value

        performance = merged["performance"]
        ttl = performance.get("cache_ttl")
        if performance.get("cache_enabled") and isinstance(ttl, int) and ttl > 0:
            cache_manager.set(CACHE_KEY, copy.deepcopy(merged), ttl=ttl)
        return merged

    def get_category(self, category: str) -> Optional[Dict[str, Any]]:
        if category not in DEFAULT_SETTINGS:
            return None
        return self.get_all()[category]

    def get_value(self, key: str, default: Any = None) -> Any:
        category, _, name = key.partition(".")
        return self.get_all().get(category, {}).get(name, default)

    @staticmethod
    def categories() -> List[str]:
        return list(DEFAULT_SETTINGS)

    # ==================== VALIDATION ====================

    def validate(self, category: str, settings: Dict[str, Any]) -> Optional[str]:
        if category not in DEFAULT_SETTINGS:
            return f"Unknown settings category: {category}"
        if not isinstance(settings, dict) or not settings:
            return "settings must be a non-empty object"

        defaults = DEFAULT_SETTINGS[category]
        unknown = [name for name in settings if name not in defaults]
        if unknown:
            return f"Unknown settings for {category}: {', '.join(sorted(unknown))}"

        for name, value in settings.items():
            error = _type_error(f"{category}.{name}", defaults[name], value)
            if error:
                return error
        return None

    # ==================== WRITE ====================

    def _upsert(self, session, category: str, settings: Dict[str, Any], updated_by: Optional[str]):
        for name, value in settings.items():
            key = f"{category}.{name}"
            row = session.get(SystemSetting, key)
            if row is None:
                row = SystemSetting(setting_key=key, category=category)
                session.add(row)
            row.setting_value = value
            row.updated_at = utc_now()
            row.updated_by = updated_by

    def _audit(self, action: str, user: dict, details: dict, ip_address: str = None):
        auth_manager.log_activity(
            (user or {}).get("userId"), action,
            resource_type="settings", details=details,
            ip_address=ip_address, username=(user or {}).get("username"),
        )

    def update_category(self, category: str, settings: Dict[str, Any], user: dict = None,
                        ip_address: str = None) -> dict:
        error = self.validate(category, settings)
        if error:
            return {"error": error}

        session = get_db_session()
        try:
            self._upsert(session, category, settings, (user or {}).get("username"))
            session.commit()
        except Exception as e:
            logger.error(f"[SETTINGS] Update error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

        cache_manager.delete(CACHE_KEY)
        self._audit("settings_update", user, {"category": category, "changes": settings}, ip_address)
        logger.info(f"[SETTINGS] Updated {category}: {sorted(settings)}")
        return {"success": True, "category": category, "settings": self.get_category(category)}

    def update_key(self, key: str, value: Any, user: dict = None, ip_address: str = None) -> dict:
        category, _, name = key.partition(".")
        if not name:
            return {"error": "Setting key must look like category.name"}
        result = self.update_category(category, {name: value}, user=user, ip_address=ip_address)
        if "error" in result:
            return result
        return {"success": True, "key": key, "value": result["settings"][name]}

    def export(self) -> dict:
        return {
            "version": SETTINGS_EXPORT_VERSION,
            "exported_at": utc_now().isoformat() + "Z",
            "settings": self.get_all(),
        }

    def import_settings(self, settings: Dict[str, Any], user: dict = None, ip_address: str = None) -> dict:
        """
        Apply an exported settings document (``{category: {name: value}}``).
        Invalid categories, names and types are skipped, not fatal.
        """
        if not isinstance(settings, dict) or not settings:
            return {"error": "settings must be a non-empty object"}

        valid: Dict[str, Dict[str, Any]] = {}
        skipped: List[str] = []
        for category, values in settings.items():
            if category not in DEFAULT_SETTINGS or not isinstance(values, dict):
                skipped.append(str(category))
                continue
            for name, value in values.items():
                key = f"{category}.{name}"
                if name not in DEFAULT_SETTINGS[category] or _type_error(key, DEFAULT_SETTINGS[category][name], value):
                    skipped.append(key)
                    continue
                valid.setdefault(category, {})[name] = value

        applied = sum(len(v) for v in valid.values())
        if applied:
            session = get_db_session()
            try:
                for category, values in valid.items():
                    self._upsert(session, category, values, (user or {}).get("username"))
                session.commit()
            except Exception as e:
                logger.error(f"[SETTINGS] Import error: {type(e).__name__}: {e}")
                session.rollback()
                return {"error": str(e)}
            finally:
                session.close()
            cache_manager.delete(CACHE_KEY)

        details = {"operation": "import", "applied": applied, "skipped": skipped}
        self._audit("settings_update", user, details, ip_address)
        self._audit("settings_import", user, details, ip_address)
        logger.info(f"[SETTINGS] Imported {applied} settings, skipped {len(skipped)}")
        return {"success": True, "imported": applied, "skipped": skipped}

    def reset(self, category: Optional[str] = None, user: dict = None, ip_address: str = None) -> dict:
        if category and category not in DEFAULT_SETTINGS:
            return {"error": f"Unknown settings category: {category}"}

        session = get_db_session()
        try:
            query = session.query(SystemSetting)
            if category:
                query = query.filter(SystemSetting.category == category)
            removed = query.delete(synchronize_session=False)
            session.commit()
        except Exception as e:
            logger.error(f"[SETTINGS] Reset error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

        cache_manager.delete(CACHE_KEY)
        self._audit("settings_update", user, {"operation": "reset", "category": category or "all"}, ip_address)
        logger.info(f"[SETTINGS] Reset {category or 'all categories'} ({removed} overrides removed)")
        return {"success": True, "reset": category or "all", "removed": removed}


# Global instance
settings_manager = SettingsManager()
