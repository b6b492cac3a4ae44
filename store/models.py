"""
Database models for the LogDeck console.

This module defines SQLAlchemy ORM models for everything the admin console
persists: accounts and sessions, API keys, the activity (audit) log,
runtime settings, ingested log entries, alert rules, and dashboards.

Models:
- User, UserSession: console accounts and login sessions
- ApiKey: hashed API keys for programmatic access
- ActivityLog: audit trail of user and system actions
- SystemSetting: runtime-editable settings keyed as "category.name"
- LogEntry: normalized log messages written by the ingestion engine
- AlertRule: threshold rules evaluated against stored logs
- Dashboard, DashboardWidget, WidgetTemplate: dashboard builder data
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, desc
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the storage convention for every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ==================== ACCOUNTS ====================

class User(Base):
    """Console user account"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="viewer")
    active = Column(Boolean, nullable=False, default=True)
    preferences = Column(JSON, nullable=True, default=lambda: {})
    created_at = Column(DateTime, nullable=False, default=utc_now)
    last_login = Column(DateTime, nullable=True)

    sessions = relationship(
        "UserSession",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role}')>"

    def to_dict(self):
        # password_hash is never serialized
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "active": bool(self.active),
            "preferences": self.preferences or {},
            "created_at": _iso(self.created_at),
            "last_login": _iso(self.last_login),
        }


class UserSession(Base):
    """Login session; session_token holds the JWT id (jti)"""

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_token = Column(String(255), unique=True, nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False)
    last_activity = Column(DateTime, nullable=True, default=utc_now)
    is_active = Column(Boolean, nullable=False, default=True)

    user = relationship("User", back_populates="sessions")

    def __repr__(self):
        return f"<UserSession(id={self.id}, user_id={self.user_id}, active={self.is_active})>"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "last_activity": _iso(self.last_activity),
            "is_active": bool(self.is_active),
        }


class ApiKey(Base):
    """
    API key for devices and integrations.

    Only the SHA-256 hash of the key is stored. The plaintext value exists
    in memory exactly once, when the key is created or regenerated.
    """

    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    key_prefix = Column(String(16), nullable=False)
    permissions = Column(JSON, nullable=False, default=lambda: [])
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<ApiKey(id={self.id}, name='{self.name}', enabled={self.enabled})>"

    @property
    def masked_key(self) -> str:
        return f"elk_{self.key_hash[:8]}...{self.key_hash[-4:]}"

    def is_expired(self, now: datetime = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "key_preview": self.masked_key,
            "key_prefix": self.key_prefix,
            "permissions": list(self.permissions or []),
            "user_id": self.user_id,
            "enabled": bool(self.enabled),
            "status": "active" if self.enabled and not self.is_expired() else "inactive",
            "expires_at": _iso(self.expires_at),
            "usage_count": self.usage_count or 0,
            "last_used": _iso(self.last_used),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ==================== AUDIT ====================

class ActivityLog(Base):
    """Audit trail entry"""

    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    username = Column(String(100), nullable=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default="success")
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_activity_user_created", user_id, desc(created_at)),
        Index("idx_activity_action_created", action, desc(created_at)),
    )

    def __repr__(self):
        return f"<ActivityLog(id={self.id}, action='{self.action}', user_id={self.user_id})>"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "status": self.status,
            "created_at": _iso(self.created_at),
        }


# ==================== SETTINGS ====================

class SystemSetting(Base):
    """Runtime setting override, keyed as 'category.name'"""

    __tablename__ = "system_settings"

    setting_key = Column(String(150), primary_key=True)
    setting_value = Column(JSON, nullable=True)
    category = Column(String(50), nullable=False, index=True)
    description = Column(String(255), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
    updated_by = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<SystemSetting(key='{self.setting_key}')>"

    def to_dict(self):
        return {
            "key": self.setting_key,
            "value": self.setting_value,
            "category": self.category,
            "description": self.description,
            "updated_at": _iso(self.updated_at),
            "updated_by": self.updated_by,
        }


# ==================== LOGS ====================

class LogEntry(Base):
    """
    A normalized log message.

    Written by the ingestion engine's sink, the HTTP intake endpoint, and
    the test-parse endpoint.
    """

    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False, default=utc_now, index=True)
    level = Column(String(20), nullable=False, default="info", index=True)
    source = Column(String(255), nullable=True, index=True)
    message = Column(Text, nullable=False, default="")
    protocol = Column(String(20), nullable=True, index=True)
    transport = Column(String(10), nullable=True)
    source_ip = Column(String(45), nullable=True)
    facility = Column(String(50), nullable=True)
    hostname = Column(String(255), nullable=True)
    app_name = Column(String(255), nullable=True)
    log_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_logs_level_ts", level, desc(timestamp)),
        Index("idx_logs_source_ts", source, desc(timestamp)),
    )

    def __repr__(self):
        return f"<LogEntry(id={self.id}, level='{self.level}', source='{self.source}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "level": self.level,
            "source": self.source,
            "message": self.message,
            "protocol": self.protocol,
            "transport": self.transport,
            "source_ip": self.source_ip,
            "facility": self.facility,
            "hostname": self.hostname,
            "app_name": self.app_name,
            "metadata": self.log_metadata or {},
            "created_at": _iso(self.created_at),
        }


# ==================== ALERTS ====================

class AlertRule(Base):
    """Threshold rule: fire when matching logs in a window reach threshold"""

    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    level = Column(String(20), nullable=True)
    pattern = Column(String(500), nullable=True)
    source = Column(String(255), nullable=True)
    threshold = Column(Integer, nullable=False, default=1)
    window_minutes = Column(Integer, nullable=False, default=5)
    severity = Column(String(20), nullable=False, default="medium")
    enabled = Column(Boolean, nullable=False, default=True)
    last_triggered = Column(DateTime, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<AlertRule(id={self.id}, name='{self.name}', enabled={self.enabled})>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "level": self.level,
            "pattern": self.pattern,
            "source": self.source,
            "threshold": self.threshold,
            "window_minutes": self.window_minutes,
            "severity": self.severity,
            "enabled": bool(self.enabled),
            "last_triggered": _iso(self.last_triggered),
            "trigger_count": self.trigger_count or 0,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ==================== DASHBOARDS ====================

class Dashboard(Base):
    """User dashboard; widgets are deleted with it"""

    __tablename__ = "dashboards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    layout = Column(JSON, nullable=True, default=lambda: {})
    is_default = Column(Boolean, nullable=False, default=False)
    is_public = Column(Boolean, nullable=False, default=False)
    refresh_interval = Column(Integer, nullable=False, default=30)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    widgets = relationship(
        "DashboardWidget",
        back_populates="dashboard",
        cascade="all, delete-orphan",
        order_by=lambda: [DashboardWidget.position_y, DashboardWidget.position_x],
    )

    def __repr__(self):
        return f"<Dashboard(id={self.id}, name='{self.name}')>"

    def to_dict(self, include_widgets: bool = False):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "layout": self.layout or {},
            "is_default": bool(self.is_default),
            "is_public": bool(self.is_public),
            "refresh_interval": self.refresh_interval,
            "user_id": self.user_id,
            "widget_count": len(self.widgets),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_widgets:
            data["widgets"] = [w.to_dict() for w in self.widgets]
        return data


class DashboardWidget(Base):
    """Widget placed on a 12-column dashboard grid"""

    __tablename__ = "dashboard_widgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dashboard_id = Column(Integer, ForeignKey("dashboards.id"), nullable=False, index=True)
    widget_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    config = Column(JSON, nullable=True, default=lambda: {})
    position_x = Column(Integer, nullable=False, default=0)
    position_y = Column(Integer, nullable=False, default=0)
    width = Column(Integer, nullable=False, default=4)
    height = Column(Integer, nullable=False, default=3)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    dashboard = relationship("Dashboard", back_populates="widgets")

    def __repr__(self):
        return f"<DashboardWidget(id={self.id}, type='{self.widget_type}', dashboard_id={self.dashboard_id})>"

    def to_dict(self):
        return {
            "id": self.id,
            "dashboard_id": self.dashboard_id,
            "widget_type": self.widget_type,
            "title": self.title,
            "config": self.config or {},
            "position": {
                "x": self.position_x,
                "y": self.position_y,
                "w": self.width,
                "h": self.height,
            },
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WidgetTemplate(Base):
    """Reusable widget preset"""

    __tablename__ = "widget_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_key = Column(String(100), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    widget_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    default_config = Column(JSON, nullable=True, default=lambda: {})
    width = Column(Integer, nullable=False, default=4)
    height = Column(Integer, nullable=False, default=3)
    category = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<WidgetTemplate(key='{self.template_key}', type='{self.widget_type}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "template_key": self.template_key,
            "name": self.name,
            "widget_type": self.widget_type,
            "description": self.description,
            "default_config": self.default_config or {},
            "width": self.width,
            "height": self.height,
            "category": self.category,
            "created_at": _iso(self.created_at),
        }
