"""
Dashboard builder: dashboards, widgets, layouts and widget templates.

Everything is serialized before the session closes, so callers only ever
see plain dicts.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import or_

from dashboards.widgets import (
    DEFAULT_TEMPLATES,
    WIDGET_TYPES,
    clamp_position,
    normalize_layout,
    place_widget,
)
from store.database import get_db_session
from store.models import Dashboard, DashboardWidget, WidgetTemplate

DASHBOARD_FIELDS = ("name", "description", "layout", "is_default", "is_public", "refresh_interval")


def _user_id(user: Optional[dict]) -> Optional[int]:
    return (user or {}).get("userId")


def _is_admin(user: Optional[dict]) -> bool:
    return (user or {}).get("role") == "admin"


def _position(widget: DashboardWidget) -> Dict[str, int]:
    return {"x": widget.position_x, "y": widget.position_y, "w": widget.width, "h": widget.height}


def _apply_position(widget: DashboardWidget, position: Dict[str, int]):
    widget.position_x = position["x"]
    widget.position_y = position["y"]
    widget.width = position["w"]
    widget.height = position["h"]


class DashboardBuilder:
    """CRUD for dashboards and their widgets"""

    def _can_view(self, dashboard: Dashboard, user: Optional[dict]) -> bool:
        if user is None or _is_admin(user) or dashboard.is_public:
            return True
        return dashboard.user_id == _user_id(user)

    def _can_edit(self, dashboard: Dashboard, user: Optional[dict]) -> bool:
        if user is None or _is_admin(user):
            return True
        return dashboard.user_id is None or dashboard.user_id == _user_id(user)

    def _load(self, session, dashboard_id: int, user: Optional[dict], edit: bool = False):
        """Return (dashboard, error_dict)"""
        dashboard = session.get(Dashboard, dashboard_id)
        if dashboard is None:
            return None, {"error": "Dashboard not found", "status": 404}
        allowed = self._can_edit(dashboard, user) if edit else self._can_view(dashboard, user)
        if not allowed:
            return None, {"error": "Access denied to this dashboard", "status": 403}
        return dashboard, None

    # ==================== DASHBOARDS ====================

    def list_dashboards(self, user: Optional[dict] = None) -> List[dict]:
        """The user's own dashboards plus public ones, each with its widget count"""
        session = get_db_session()
        try:
            query = session.query(Dashboard)
            if user is not None and not _is_admin(user):
                query = query.filter(or_(Dashboard.user_id == _user_id(user), Dashboard.is_public.is_(True)))
            rows = query.order_by(Dashboard.is_default.desc(), Dashboard.id).all()
            return [d.to_dict() for d in rows]
        finally:
            session.close()

    def get_dashboard(self, dashboard_id: int, user: Optional[dict] = None) -> dict:
        session = get_db_session()
        try:
            dashboard, error = self._load(session, dashboard_id, user)
            if error:
                return error
            return {"success": True, "dashboard": dashboard.to_dict(include_widgets=True)}
        finally:
            session.close()

    def create_dashboard(self, name: str, user: Optional[dict] = None, **fields) -> dict:
        if not (name or "").strip():
            return {"error": "Dashboard name is required"}

        session = get_db_session()
        try:
            values = {k: v for k, v in fields.items() if k in DASHBOARD_FIELDS and v is not None}
            dashboard = Dashboard(name=name.strip(), user_id=_user_id(user), **values)
            session.add(dashboard)
            session.commit()
            logger.info(f"[DASHBOARDS] Created dashboard {dashboard.id} ({dashboard.name})")
            return {"success": True, "dashboard": dashboard.to_dict(include_widgets=True)}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Create error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def update_dashboard(self, dashboard_id: int, fields: Dict[str, Any], user: Optional[dict] = None) -> dict:
        if "name" in fields and not (fields["name"] or "").strip():
            return {"error": "Dashboard name is required"}

        session = get_db_session()
        try:
            dashboard, error = self._load(session, dashboard_id, user, edit=True)
            if error:
                return error
            for key, value in fields.items():
                if key in DASHBOARD_FIELDS:
                    setattr(dashboard, key, value.strip() if key == "name" else value)
            session.commit()
            return {"success": True, "dashboard": dashboard.to_dict(include_widgets=True)}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Update error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def delete_dashboard(self, dashboard_id: int, user: Optional[dict] = None) -> dict:
        session = get_db_session()
        try:
            dashboard, error = self._load(session, dashboard_id, user, edit=True)
            if error:
                return error
            widget_count = len(dashboard.widgets)
            session.delete(dashboard)
            session.commit()
            logger.info(f"[DASHBOARDS] Deleted dashboard {dashboard_id} with {widget_count} widgets")
            return {"success": True, "deleted": dashboard_id, "widgets_deleted": widget_count}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Delete error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    # ==================== WIDGETS ====================

    def add_widget(self, dashboard_id: int, widget_type: str, title: Optional[str] = None,
                   config: Optional[Dict[str, Any]] = None, position: Optional[Dict[str, Any]] = None,
                   user: Optional[dict] = None) -> dict:
        if widget_type not in WIDGET_TYPES:
            return {"error": f"Unknown widget type: {widget_type}"}

        session = get_db_session()
        try:
            dashboard, error = self._load(session, dashboard_id, user, edit=True)
            if error:
                return error

            meta = WIDGET_TYPES[widget_type]
            existing = [_position(w) for w in dashboard.widgets]
            widget = DashboardWidget(
                dashboard_id=dashboard.id,
                widget_type=widget_type,
                title=(title or "").strip() or meta["name"],
                config={**meta["default_config"], **(config or {})},
            )
            _apply_position(widget, place_widget(existing, widget_type, position))
            session.add(widget)
            session.commit()
            logger.info(f"[DASHBOARDS] Added {widget_type} widget {widget.id} to dashboard {dashboard_id}")
            return {"success": True, "widget": widget.to_dict()}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Add widget error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def update_widget(self, widget_id: int, title: Optional[str] = None,
                      config: Optional[Dict[str, Any]] = None, position: Optional[Dict[str, Any]] = None,
                      user: Optional[dict] = None) -> dict:
        session = get_db_session()
        try:
            widget = session.get(DashboardWidget, widget_id)
            if widget is None:
                return {"error": "Widget not found", "status": 404}
            _, error = self._load(session, widget.dashboard_id, user, edit=True)
            if error:
                return error

            if title is not None:
                if not title.strip():
                    return {"error": "Widget title cannot be empty"}
                widget.title = title.strip()
            if config is not None:
                widget.config = {**(widget.config or {}), **config}
            if position:
                _apply_position(widget, clamp_position({**_position(widget), **position}))
            session.commit()
            return {"success": True, "widget": widget.to_dict()}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Update widget error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def delete_widget(self, widget_id: int, user: Optional[dict] = None) -> dict:
        session = get_db_session()
        try:
            widget = session.get(DashboardWidget, widget_id)
            if widget is None:
                return {"error": "Widget not found", "status": 404}
            _, error = self._load(session, widget.dashboard_id, user, edit=True)
            if error:
                return error
            session.delete(widget)
            session.commit()
            return {"success": True, "deleted": widget_id}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Delete widget error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def save_layout(self, dashboard_id: int, items: List[Dict[str, Any]], user: Optional[dict] = None) -> dict:
        """
        Apply [{id, x, y, w, h}] to the dashboard's widgets.

        Widgets not named in `items` keep their position but still take
        part in collision resolution. Unknown ids give 400.
        """
        session = get_db_session()
        try:
            dashboard, error = self._load(session, dashboard_id, user, edit=True)
            if error:
                return error

            widgets = {w.id: w for w in dashboard.widgets}
            requested = {}
            for item in items:
                widget_id = item.get("id")
                if widget_id not in widgets:
                    return {"error": f"Widget {widget_id} is not on dashboard {dashboard_id}"}
                requested[widget_id] = item

            merged = [
                {"id": wid, **_position(w), **{k: v for k, v in requested.get(wid, {}).items() if k in ("x", "y", "w", "h")}}
                for wid, w in widgets.items()
            ]
            layout = normalize_layout(merged)
            for item in layout:
                _apply_position(widgets[item["id"]], item)
            dashboard.layout = {"columns": 12, "items": [{k: i[k] for k in ("id", "x", "y", "w", "h")} for i in layout]}
            session.commit()
            logger.info(f"[DASHBOARDS] Saved layout of dashboard {dashboard_id} ({len(layout)} widgets)")
            return {"success": True, "dashboard": dashboard.to_dict(include_widgets=True)}
        except Exception as e:
            logger.error(f"[DASHBOARDS] Save layout error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    # ==================== TEMPLATES ====================

    def list_templates(self) -> List[dict]:
        session = get_db_session()
        try:
            return [t.to_dict() for t in session.query(WidgetTemplate).order_by(WidgetTemplate.id).all()]
        finally:
            session.close()

    def seed_templates(self) -> int:
        """Insert missing default widget templates; returns how many were added"""
        session = get_db_session()
        try:
            existing = {key for (key,) in session.query(WidgetTemplate.template_key).all()}
            added = 0
            for template in DEFAULT_TEMPLATES:
                if template["template_key"] not in existing:
                    session.add(WidgetTemplate(**template))
                    added += 1
            session.commit()
            if added:
                logger.info(f"[DASHBOARDS] Seeded {added} widget templates")
            return added
        except Exception as e:
            logger.error(f"[DASHBOARDS] Template seeding error: {type(e).__name__}: {e}")
            session.rollback()
            return 0
        finally:
            session.close()

    def create_from_template(self, template_key: str, dashboard_id: int,
                             title: Optional[str] = None, user: Optional[dict] = None) -> dict:
        session = get_db_session()
        try:
            template = session.query(WidgetTemplate).filter_by(template_key=template_key).first()
            if template is None:
                return {"error": f"Template not found: {template_key}", "status": 404}
            widget_type = template.widget_type
            config = dict(template.default_config or {})
            size = {"w": template.width, "h": template.height}
            name = template.name
        finally:
            session.close()

        return self.add_widget(
            dashboard_id, widget_type, title=title or name, config=config, position=size, user=user
        )


# Global instance
dashboard_builder = DashboardBuilder()
