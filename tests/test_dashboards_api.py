import json

from conftest import EDITOR_ID, VIEWER_ID, create_broken_dataset, create_orders_dataset


def _create_dashboard(api, **overrides) -> dict:
    payload = {
        "name": "Sales overview",
        "global_filters": [
            {"id": "f-region", "field": "region", "label": "Region"},
            {"id": "f-status", "field": "status", "operator": "eq"},
        ],
    }
    payload.update(overrides)
    response = api.client.post("/dashboards", json=payload, headers=api.headers())
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _add_chart(api, dashboard_id: int, dataset_id: int, name: str, query_config: dict, order_index: int) -> int:
    response = api.client.post(
        "/charts",
        json={
            "name": name,
            "chart_type": "kpi",
            "dashboard_id": dashboard_id,
            "dataset_ids": [dataset_id],
            "query_config": query_config,
            "order_index": order_index,
        },
        headers=api.headers(),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def _sales_dashboard(api) -> tuple[int, int, int]:
    dataset_id = create_orders_dataset(api)
    dashboard = _create_dashboard(api)
    revenue_id = _add_chart(api, dashboard["id"], dataset_id, "A", {"measures": [{"field": "revenue", "agg": "sum"}]}, 0)
    count_id = _add_chart(api, dashboard["id"], dataset_id, "B", {"measures": [{"field": "*", "agg": "count"}]}, 1)
    return dashboard["id"], revenue_id, count_id


def test_dashboard_data_applies_filters_to_every_chart(api):
    dashboard_id, revenue_id, count_id = _sales_dashboard(api)

    response = api.client.get(
        f"/dashboards/{dashboard_id}/data",
        params={"filters": json.dumps({"status": "active"})},
        headers=api.headers(),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["failed_count"] == 0
    assert [chart["chart_id"] for chart in data["charts"]] == [revenue_id, count_id]
    assert data["charts"][0]["data"]["rows"] == [{"revenue": 175}]
    assert data["charts"][1]["data"]["rows"] == [{"count": 3}]
    assert [item["id"] for item in data["global_filters"]] == ["f-region", "f-status"]


def test_failing_chart_does_not_fail_the_dashboard(api):
    dashboard_id, revenue_id, _count_id = _sales_dashboard(api)
    broken_dataset = create_broken_dataset(api)
    broken_id = _add_chart(api, dashboard_id, broken_dataset, "Broken", {"measures": [{"field": "*", "agg": "count"}]}, 2)

    response = api.client.get(f"/dashboards/{dashboard_id}/data", headers=api.headers())

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["failed_count"] == 1
    slots = {chart["chart_id"]: chart for chart in data["charts"]}
    assert slots[revenue_id]["status"] == "ok"
    assert slots[broken_id]["status"] == "error"
    assert slots[broken_id]["error"]["code"] == "table_not_found"
    assert slots[broken_id]["data"] is None


def test_apply_global_filter_routes_to_connected_charts(api):
    dashboard_id, revenue_id, count_id = _sales_dashboard(api)
    updated = api.client.put(
        f"/dashboards/{dashboard_id}/filters",
        json={
            "global_filters": [{"id": "f-region", "field": "region"}],
            "filter_connections": [{"filter_id": "f-region", "chart_ids": [revenue_id]}],
        },
        headers=api.headers(),
    )
    assert updated.status_code == 200

    response = api.client.post(
        f"/dashboards/{dashboard_id}/filters",
        json={"filter_id": "f-region", "value": "SP"},
        headers=api.headers(),
    )

    result = response.json()["data"]
    assert result["affected_charts"] == [revenue_id]
    charts = {chart["chart_id"]: chart for chart in result["data"]["charts"]}
    assert charts[revenue_id]["data"]["rows"] == [{"revenue": 1099}]
    assert charts[count_id]["data"]["rows"] == [{"count": 4}]

    missing = api.client.post(
        f"/dashboards/{dashboard_id}/filters",
        json={"filter_id": "nope", "value": "SP"},
        headers=api.headers(),
    )
    assert missing.status_code == 404
    assert missing.json()["errors"][0]["code"] == "filter_not_found"

    bad_connection = api.client.put(
        f"/dashboards/{dashboard_id}/filters",
        json={
            "global_filters": [{"id": "f-region", "field": "region"}],
            "filter_connections": [{"filter_id": "f-region", "chart_ids": [9999]}],
        },
        headers=api.headers(),
    )
    assert bad_connection.status_code == 400
    assert bad_connection.json()["errors"][0]["code"] == "invalid_filter_connection"


def test_cache_status_and_clear(api):
    dashboard_id, _revenue_id, _count_id = _sales_dashboard(api)

    before = api.client.get(f"/dashboards/{dashboard_id}/cache-status", headers=api.headers())
    assert before.json()["data"]["dashboard_cached"] is False

    first = api.client.get(f"/dashboards/{dashboard_id}/data", headers=api.headers())
    second = api.client.get(f"/dashboards/{dashboard_id}/data", headers=api.headers())
    assert [chart["data"]["cached"] for chart in first.json()["data"]["charts"]] == [False, False]
    assert [chart["data"]["cached"] for chart in second.json()["data"]["charts"]] == [True, True]

    status = api.client.get(f"/dashboards/{dashboard_id}/cache-status", headers=api.headers()).json()["data"]
    assert status["dashboard_cached"] is True
    assert status["charts_cached"] == 2
    assert status["total_charts"] == 2
    assert status["cache_size_bytes"] > 0

    viewer_clear = api.client.post(f"/dashboards/{dashboard_id}/cache/clear", headers=api.headers(user_id=VIEWER_ID))
    assert viewer_clear.status_code == 403

    cleared = api.client.post(f"/dashboards/{dashboard_id}/cache/clear", headers=api.headers())
    assert cleared.json()["data"] == {"cache_cleared": True, "affected_charts": 2}

    after = api.client.get(f"/dashboards/{dashboard_id}/cache-status", headers=api.headers()).json()["data"]
    assert after["dashboard_cached"] is False
    assert after["charts_cached"] == 0


def test_view_tracking_stats_and_listing(api):
    dashboard_id, _revenue_id, _count_id = _sales_dashboard(api)
    _create_dashboard(api, name="Marketing", global_filters=[], status="published", is_featured=True)

    api.client.get(f"/dashboards/{dashboard_id}", headers=api.headers())
    detail = api.client.get(f"/dashboards/{dashboard_id}", headers=api.headers())
    assert detail.json()["data"]["view_count"] == 2
    assert len(detail.json()["data"]["charts"]) == 2

    stats = api.client.get("/dashboards/stats", headers=api.headers()).json()["data"]
    assert stats["total_dashboards"] == 2
    assert stats["published_dashboards"] == 1
    assert stats["draft_dashboards"] == 1
    assert stats["total_charts"] == 2
    assert stats["total_views"] == 2

    listing = api.client.get("/dashboards", params={"status": "published"}, headers=api.headers()).json()["data"]
    assert [item["name"] for item in listing["items"]] == ["Marketing"]

    charts = api.client.get(f"/dashboards/{dashboard_id}/charts", headers=api.headers()).json()["data"]
    assert [chart["name"] for chart in charts] == ["A", "B"]


def test_layout_update(api):
    dashboard_id, revenue_id, count_id = _sales_dashboard(api)

    response = api.client.put(
        f"/dashboards/{dashboard_id}/layout",
        json={
            "layout_config": {"columns": 12},
            "chart_positions": [
                {"chart_id": revenue_id, "position": {"x": 6, "y": 0, "w": 6, "h": 4}, "order_index": 1},
                {"chart_id": count_id, "position": {"x": 0, "y": 0, "w": 6, "h": 4}, "order_index": 0},
            ],
        },
        headers=api.headers(),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["layout_config"] == {"columns": 12}
    assert [chart["id"] for chart in data["charts"]] == [count_id, revenue_id]

    invalid = api.client.put(
        f"/dashboards/{dashboard_id}/layout",
        json={"chart_positions": [{"chart_id": 9999, "position": {}}]},
        headers=api.headers(),
    )
    assert invalid.status_code == 400
    assert invalid.json()["errors"][0]["code"] == "invalid_layout"


def test_archive_cascades_to_charts(api):
    dashboard_id, revenue_id, _count_id = _sales_dashboard(api)

    editor_delete = api.client.delete(f"/dashboards/{dashboard_id}", headers=api.headers(user_id=EDITOR_ID))
    assert editor_delete.status_code == 403

    archived = api.client.delete(f"/dashboards/{dashboard_id}", headers=api.headers())
    assert archived.status_code == 200
    assert archived.json()["message"] == "Dashboard archived"

    assert api.client.get(f"/dashboards/{dashboard_id}", headers=api.headers()).status_code == 404
    assert api.client.get(f"/charts/{revenue_id}", headers=api.headers()).status_code == 404

    listing = api.client.get("/dashboards", params={"include_archived": "true"}, headers=api.headers()).json()["data"]
    assert listing["items"][0]["status"] == "archived"


def test_duplicate_copies_active_charts(api):
    dashboard_id, revenue_id, _count_id = _sales_dashboard(api)
    api.client.put(
        f"/dashboards/{dashboard_id}/filters",
        json={
            "global_filters": [{"id": "f-region", "field": "region"}],
            "filter_connections": [{"filter_id": "f-region", "chart_ids": [revenue_id]}],
        },
        headers=api.headers(),
    )

    response = api.client.post(f"/dashboards/{dashboard_id}/duplicate", json={"name": "Copy"}, headers=api.headers())

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["id"] != dashboard_id
    assert data["name"] == "Copy"
    assert data["status"] == "draft"
    assert len(data["charts"]) == 2
    copied_ids = {chart["id"] for chart in data["charts"]}
    assert data["filter_connections"][0]["chart_ids"][0] in copied_ids


def test_dashboard_refresh_and_export_jobs(api):
    dashboard_id, revenue_id, count_id = _sales_dashboard(api)

    refresh = api.client.post(f"/dashboards/{dashboard_id}/refresh", json={"chart_ids": [count_id]}, headers=api.headers())
    assert refresh.status_code == 202
    assert refresh.json()["data"]["charts_to_refresh"] == [count_id]
    job = api.wait_for_job(refresh.json()["data"]["refresh_id"])
    assert job["status"] == "completed"
    assert job["result"]["charts_refreshed"] == 1

    export = api.client.post(f"/dashboards/{dashboard_id}/export", json={"format": "json"}, headers=api.headers())
    assert export.status_code == 202
    job = api.wait_for_job(export.json()["data"]["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["format"] == "json"

    download = api.client.get(f"/jobs/{job['job_id']}/download", headers=api.headers())
    payload = download.json()
    assert payload["dashboard_id"] == dashboard_id
    assert [chart["chart_id"] for chart in payload["charts"]] == [revenue_id, count_id]


def test_only_submitters_or_cache_managers_cancel_jobs(api):
    dashboard_id, _revenue_id, _count_id = _sales_dashboard(api)

    refresh = api.client.post(f"/dashboards/{dashboard_id}/refresh", headers=api.headers())
    refresh_id = refresh.json()["data"]["refresh_id"]
    api.wait_for_job(refresh_id)

    viewer_cancel = api.client.post(f"/jobs/{refresh_id}/cancel", headers=api.headers(user_id=VIEWER_ID))
    assert viewer_cancel.status_code == 403
    assert viewer_cancel.json()["errors"][0]["code"] == "insufficient_permissions"

    editor_cancel = api.client.post(f"/jobs/{refresh_id}/cancel", headers=api.headers(user_id=EDITOR_ID))
    assert editor_cancel.status_code == 200

    own_export = api.client.post(
        f"/dashboards/{dashboard_id}/export", json={"format": "csv"}, headers=api.headers(user_id=VIEWER_ID)
    )
    assert own_export.status_code == 202
    own_job_id = own_export.json()["data"]["job_id"]
    own_cancel = api.client.post(f"/jobs/{own_job_id}/cancel", headers=api.headers(user_id=VIEWER_ID))
    assert own_cancel.status_code == 200


def test_unknown_dashboard_is_not_found(api):
    response = api.client.get("/dashboards/12345/data", headers=api.headers())
    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "dashboard_not_found"
