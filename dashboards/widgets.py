"""
Widget catalogue and 12-column grid layout rules for dashboards.

Positions are dicts with keys x, y, w, h. Layout helpers never touch the
database; the builder persists whatever they return.
"""

from typing import Any, Dict, Iterable, List, Optional

GRID_COLUMNS = 12
MAX_ROWS = 1000

# ==================== WIDGET TYPES ====================

WIDGET_TYPES: Dict[str, Dict[str, Any]] = {
    "log_timeline": {
        "name": "Log Timeline",
        "category": "logs",
        "default_size": {"w": 12, "h": 4},
        "default_config": {"timeRange": "24h", "levels": ["error", "warning", "info"]},
    },
    "metrics_chart": {
        "name": "Metrics Chart",
        "category": "metrics",
        "default_size": {"w": 6, "h": 4},
        "default_config": {"chartType": "line", "timeRange": "1h"},
    },
    "alert_summary": {
        "name": "Alert Summary",
        "category": "alerts",
        "default_size": {"w": 4, "h": 3},
        "default_config": {"showResolved": False},
    },
    "system_status": {
        "name": "System Status",
        "category": "system",
        "default_size": {"w": 4, "h": 3},
        "default_config": {},
    },
    "log_levels_pie": {
        "name": "Log Levels",
        "category": "logs",
        "default_size": {"w": 4, "h": 4},
        "default_config": {"timeRange": "24h"},
    },
    "source_breakdown": {
        "name": "Source Breakdown",
        "category": "logs",
        "default_size": {"w": 6, "h": 4},
        "default_config": {"timeRange": "24h", "limit": 10},
    },
    "error_trending": {
        "name": "Error Trending",
        "category": "logs",
        "default_size": {"w": 6, "h": 3},
        "default_config": {"timeRange": "24h"},
    },
    "performance_gauge": {
        "name": "Performance Gauge",
        "category": "system",
        "default_size": {"w": 3, "h": 3},
        "default_config": {"metrics": ["cpu", "memory"]},
    },
    "geo_map": {
        "name": "Source IP Map",
        "category": "network",
        "default_size": {"w": 6, "h": 5},
        "default_config": {"timeRange": "24h", "limit": 25},
    },
    "correlation_matrix": {
        "name": "Correlation Matrix",
        "category": "analysis",
        "default_size": {"w": 6, "h": 5},
        "default_config": {"timeRange": "24h", "limit": 10},
    },
    "real_time_feed": {
        "name": "Real-Time Feed",
        "category": "logs",
        "default_size": {"w": 6, "h": 6},
        "default_config": {"limit": 50},
    },
    "custom_query": {
        "name": "Custom Query",
        "category": "analysis",
        "default_size": {"w": 6, "h": 4},
        "default_config": {"query": "", "limit": 50},
    },
}

DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "template_key": "log_timeline_basic",
        "name": "Basic Log Timeline",
        "widget_type": "log_timeline",
        "description": "Hourly log volume by level over the last day",
        "default_config": {"timeRange": "24h"},
        "width": 12,
        "height": 4,
        "category": "logs",
    },
    {
        "template_key": "metrics_realtime_chart",
        "name": "Real-Time Metrics",
        "widget_type": "metrics_chart",
        "description": "Ingestion totals per protocol",
        "default_config": {"chartType": "line", "timeRange": "1h"},
        "width": 6,
        "height": 4,
        "category": "metrics",
    },
    {
        "template_key": "alert_summary_widget",
        "name": "Alert Summary",
        "widget_type": "alert_summary",
        "description": "Alert rules and how often they fired",
        "default_config": {},
        "width": 4,
        "height": 3,
        "category": "alerts",
    },
    {
        "template_key": "system_health_gauge",
        "name": "System Health",
        "widget_type": "performance_gauge",
        "description": "CPU and memory usage",
        "default_config": {"metrics": ["cpu", "memory"]},
        "width": 3,
        "height": 3,
        "category": "system",
    },
]


def widget_type_list() -> List[Dict[str, Any]]:
    return [{"type": key, **meta} for key, meta in WIDGET_TYPES.items()]


# ==================== LAYOUT ====================

def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def clamp_position(position: Dict[str, Any], default_w: int = 4, default_h: int = 3) -> Dict[str, int]:
    """Fit a position onto the grid: 1 <= w <= 12, 1 <= h <= MAX_ROWS, x + w <= 12, 0 <= y <= MAX_ROWS"""
    w = min(max(_as_int(position.get("w"), default_w), 1), GRID_COLUMNS)
    h = min(max(_as_int(position.get("h"), default_h), 1), MAX_ROWS)
    x = min(max(_as_int(position.get("x"), 0), 0), GRID_COLUMNS - w)
    y = min(max(_as_int(position.get("y"), 0), 0), MAX_ROWS)
    return {"x": x, "y": y, "w": w, "h": h}


def overlaps(a: Dict[str, int], b: Dict[str, int]) -> bool:
    return (
        a["x"] < b["x"] + b["w"]
        and b["x"] < a["x"] + a["w"]
        and a["y"] < b["y"] + b["h"]
        and b["y"] < a["y"] + a["h"]
    )


def normalize_layout(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Clamp every item and push colliding items down until none overlap.

    Items are processed in (y, x) order; each one only moves down, below
    whichever already-placed item it collides with. Extra keys (id, ...)
    are carried through.
    """
    clamped = []
    for item in items:
        pos = clamp_position(item)
        clamped.append({**item, **pos})
    clamped.sort(key=lambda i: (i["y"], i["x"]))

    placed: List[Dict[str, Any]] = []
    for item in clamped:
        moved = True
        while moved:
            moved = False
            for other in placed:
                if overlaps(item, other):
                    item["y"] = other["y"] + other["h"]
                    moved = True
        placed.append(item)
    return placed


def find_free_slot(existing: Iterable[Dict[str, int]], w: int, h: int) -> Dict[str, int]:
    """
    First slot (rows top to bottom, columns left to right) where a w x h widget fits.

    A slot can only open up on row 0 or on another widget's bottom edge, and
    on column 0 or another widget's right edge, so only those are tried.
    """
    size = clamp_position({"x": 0, "y": 0, "w": w, "h": h})
    occupied = list(existing)
    rows = sorted({0} | {o["y"] + o["h"] for o in occupied})
    columns = sorted({0} | {o["x"] + o["w"] for o in occupied if o["x"] + o["w"] + size["w"] <= GRID_COLUMNS})
    for y in rows:
        for x in columns:
            candidate = {"x": x, "y": y, "w": size["w"], "h": size["h"]}
            if not any(overlaps(candidate, o) for o in occupied):
                return candidate
    return {"x": 0, "y": rows[-1], "w": size["w"], "h": size["h"]}


def place_widget(existing: Iterable[Dict[str, int]], widget_type: str,
                 position: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """Position for a new widget: the requested one clamped, or the first free slot"""
    size = WIDGET_TYPES.get(widget_type, {}).get("default_size", {"w": 4, "h": 3})
    if position and "x" in position and "y" in position:
        return clamp_position(position, size["w"], size["h"])
    w = _as_int((position or {}).get("w"), size["w"])
    h = _as_int((position or {}).get("h"), size["h"])
    return find_free_slot(existing, w, h)
