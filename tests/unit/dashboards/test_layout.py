from dashboards.widgets import (
    DEFAULT_TEMPLATES,
    MAX_ROWS,
    WIDGET_TYPES,
    clamp_position,
    find_free_slot,
    normalize_layout,
    overlaps,
    place_widget,
)


def test_widget_catalogue():
    assert len(WIDGET_TYPES) == 12
    for meta in WIDGET_TYPES.values():
        assert {"name", "category", "default_size", "default_config"} <= set(meta)
    assert {t["template_key"] for t in DEFAULT_TEMPLATES} == {
        "log_timeline_basic", "metrics_realtime_chart", "alert_summary_widget", "system_health_gauge",
    }
    assert all(t["widget_type"] in WIDGET_TYPES for t in DEFAULT_TEMPLATES)


def test_clamp_position_bounds():
    assert clamp_position({"x": 10, "y": -2, "w": 20, "h": 0}) == {"x": 0, "y": 0, "w": 12, "h": 1}
    assert clamp_position({"x": 10, "y": 3, "w": 4, "h": 2}) == {"x": 8, "y": 3, "w": 4, "h": 2}
    assert clamp_position({"x": -5, "y": 1, "w": 0, "h": 5}) == {"x": 0, "y": 1, "w": 1, "h": 5}


def test_clamp_position_defaults():
    assert clamp_position({}, default_w=6, default_h=4) == {"x": 0, "y": 0, "w": 6, "h": 4}
    assert clamp_position({"x": "3", "w": "bad"}) == {"x": 3, "y": 0, "w": 4, "h": 3}


def test_overlaps():
    a = {"x": 0, "y": 0, "w": 6, "h": 2}
    assert overlaps(a, {"x": 5, "y": 1, "w": 2, "h": 2})
    assert not overlaps(a, {"x": 6, "y": 0, "w": 6, "h": 2})
    assert not overlaps(a, {"x": 0, "y": 2, "w": 6, "h": 2})


def test_normalize_pushes_colliding_widgets_down():
    layout = normalize_layout([
        {"id": 2, "x": 3, "y": 1, "w": 6, "h": 2},
        {"id": 1, "x": 0, "y": 0, "w": 6, "h": 2},
    ])
    by_id = {item["id"]: item for item in layout}
    assert by_id[1]["y"] == 0
    assert by_id[2]["y"] == 2
    assert [item["id"] for item in layout] == [1, 2]


def test_normalize_cascades():
    layout = normalize_layout([
        {"id": 1, "x": 0, "y": 0, "w": 12, "h": 1},
        {"id": 2, "x": 0, "y": 0, "w": 12, "h": 1},
        {"id": 3, "x": 0, "y": 1, "w": 12, "h": 2},
    ])
    assert [(i["id"], i["y"]) for i in layout] == [(1, 0), (2, 1), (3, 2)]
    for i, a in enumerate(layout):
        for b in layout[i + 1:]:
            assert not overlaps(a, b)


def test_normalize_clamps_items():
    (item,) = normalize_layout([{"id": 1, "x": 11, "y": -1, "w": 4, "h": 0}])
    assert (item["x"], item["y"], item["w"], item["h"]) == (8, 0, 4, 1)


def test_find_free_slot():
    assert find_free_slot([], 6, 3) == {"x": 0, "y": 0, "w": 6, "h": 3}
    assert find_free_slot([{"x": 0, "y": 0, "w": 6, "h": 3}], 6, 3) == {"x": 6, "y": 0, "w": 6, "h": 3}
    assert find_free_slot([{"x": 0, "y": 0, "w": 12, "h": 2}], 4, 2) == {"x": 0, "y": 2, "w": 4, "h": 2}


def test_place_widget_uses_type_default_size():
    position = place_widget([], "log_timeline")
    assert position == {"x": 0, "y": 0, "w": 12, "h": 4}
    position = place_widget([{"x": 0, "y": 0, "w": 12, "h": 4}], "performance_gauge")
    assert position == {"x": 0, "y": 4, "w": 3, "h": 3}


def test_place_widget_with_explicit_position():
    assert place_widget([], "geo_map", {"x": 9, "y": 2}) == {"x": 6, "y": 2, "w": 6, "h": 5}


def test_clamp_position_caps_rows():
    assert clamp_position({"y": 10 ** 9, "h": 10 ** 9}) == {"x": 0, "y": MAX_ROWS, "w": 4, "h": MAX_ROWS}


def test_find_free_slot_jumps_past_tall_widgets():
    tall = {"x": 0, "y": 0, "w": 12, "h": 10 ** 8}
    assert find_free_slot([tall], 4, 3) == {"x": 0, "y": 10 ** 8, "w": 4, "h": 3}

    side_by_side = [{"x": 0, "y": 0, "w": 8, "h": 500000}, {"x": 8, "y": 0, "w": 4, "h": 2}]
    assert find_free_slot(side_by_side, 4, 3) == {"x": 8, "y": 2, "w": 4, "h": 3}


def test_find_free_slot_matches_row_scan():
    occupied = [
        {"x": 0, "y": 0, "w": 3, "h": 2},
        {"x": 5, "y": 0, "w": 4, "h": 1},
        {"x": 3, "y": 2, "w": 9, "h": 3},
    ]
    assert find_free_slot(occupied, 3, 1) == {"x": 9, "y": 0, "w": 3, "h": 1}
    assert find_free_slot(occupied, 6, 1) == {"x": 3, "y": 1, "w": 6, "h": 1}
    assert find_free_slot(occupied, 12, 1) == {"x": 0, "y": 5, "w": 12, "h": 1}
