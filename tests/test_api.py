import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from floor_control.main import app, get_session
from floor_control.seed import seed
from floor_control.views import ensure_reporting_views

MANAGER = {"X-User-Id": "1", "X-Production-Role": "production_manager"}
ADMIN = {"X-User-Id": "2", "X-User-Role": "admin"}
SUPERVISOR = {"X-User-Id": "3", "X-Production-Role": "shift_supervisor"}
OPERATOR = {"X-User-Id": "4", "X-Production-Role": "operator"}


@pytest.fixture
def client(engine):
    ensure_reporting_views(engine)
    Session = sessionmaker(bind=engine)
    with Session() as sess:
        seed(sess)

    def _get_test_session():
        with Session() as s:
            yield s

    app.dependency_overrides[get_session] = _get_test_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def _machine_id(client, number="TPA-01"):
    return next(m["id"] for m in client.get("/machines").json() if m["number"] == number)


def _create_order(client, product="Cup 200ml", quantity=1000):
    r = client.post(
        "/orders",
        json={"machine_id": _machine_id(client), "product": product, "quantity": quantity},
        headers=MANAGER,
    )
    assert r.status_code == 200, r.text
    return r.json()


def _create_report(client):
    r = client.post("/reports", json={"shift_date": "2026-03-02", "shift_number": 1}, headers=SUPERVISOR)
    assert r.status_code == 200, r.text
    return r.json()["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_order_returns_material_request(client):
    created = _create_order(client)
    assert created["material_request_id"] is not None

    order = client.get(f"/orders/{created['id']}").json()
    assert order["status"] == "pending"
    assert order["completed_qty"] == 0
    assert order["remaining_qty"] == 1000

    req = client.get(f"/orders/{created['id']}/material-request").json()
    assert [i["percentage"] for i in req["items"]] == [60.0, 40.0]
    assert all(i["calculated_kg"] is None for i in req["items"])


def test_create_order_requires_manager(client):
    payload = {"machine_id": _machine_id(client), "product": "Cup 200ml", "quantity": 5}
    assert client.post("/orders", json=payload).status_code == 403
    assert client.post("/orders", json=payload, headers=SUPERVISOR).status_code == 403
    assert client.post("/orders", json=payload, headers=ADMIN).status_code == 200
    assert len(client.get("/orders").json()) == 1


def test_create_order_validation(client):
    bad = {"machine_id": _machine_id(client), "product": "Cup 200ml", "quantity": 0}
    assert client.post("/orders", json=bad, headers=MANAGER).status_code == 422
    missing = {"machine_id": 9999, "product": "Cup 200ml", "quantity": 5}
    assert client.post("/orders", json=missing, headers=MANAGER).status_code == 404


def test_report_rows_reconcile_order(client):
    order_id = _create_order(client)["id"]
    report_id = _create_report(client)

    r = client.post(
        f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 150}, headers=SUPERVISOR
    )
    assert r.json()["reconciliation"] == "applied"
    first_row = r.json()["id"]
    client.post(f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 100}, headers=SUPERVISOR)
    assert client.get(f"/orders/{order_id}").json()["completed_qty"] == 250

    r = client.delete(f"/report-rows/{first_row}", headers=SUPERVISOR)
    assert r.json()["success"] is True
    order = client.get(f"/orders/{order_id}").json()
    assert order["completed_qty"] == 100
    assert order["remaining_qty"] == 900


def test_edit_row_over_http(client):
    order_id = _create_order(client)["id"]
    report_id = _create_report(client)
    row_id = client.post(
        f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 10}, headers=SUPERVISOR
    ).json()["id"]

    r = client.patch(f"/report-rows/{row_id}", json={"actual_qty": 35, "downtime_min": 5}, headers=SUPERVISOR)
    assert r.status_code == 200
    assert r.json()["revision"] == 1
    assert client.get(f"/orders/{order_id}").json()["completed_qty"] == 35

    report = client.get(f"/reports/{report_id}", headers=SUPERVISOR).json()
    assert [row["actual_qty"] for row in report["rows"]] == [35]


def test_report_endpoints_reject_operators(client):
    order_id = _create_order(client)["id"]
    report_id = _create_report(client)
    r = client.post(f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 5}, headers=OPERATOR)
    assert r.status_code == 403
    assert client.get(f"/reports/{report_id}", headers=SUPERVISOR).json()["rows"] == []
    assert client.get("/reports").status_code == 403


def test_delete_report_requires_manager(client):
    order_id = _create_order(client)["id"]
    report_id = _create_report(client)
    client.post(f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 40}, headers=SUPERVISOR)

    assert client.delete(f"/reports/{report_id}", headers=SUPERVISOR).status_code == 403
    r = client.delete(f"/reports/{report_id}", headers=MANAGER)
    assert r.json() == {"success": True, "deleted_rows": 1}
    assert client.get(f"/orders/{order_id}").json()["completed_qty"] == 0
    assert client.get(f"/reports/{report_id}", headers=SUPERVISOR).status_code == 404


def test_status_flow_and_machine(client):
    order_id = _create_order(client)["id"]
    machine_id = _machine_id(client)

    r = client.post(f"/orders/{order_id}/status", json={"status": "in_progress"}, headers=MANAGER)
    assert r.json() == {"success": True}
    assert next(m for m in client.get("/machines").json() if m["id"] == machine_id)["status"] == "running"
    active = client.get(f"/machines/{machine_id}/orders/active").json()
    assert [o["id"] for o in active] == [order_id]

    client.post(f"/orders/{order_id}/status", json={"status": "completed"}, headers=MANAGER)
    assert next(m for m in client.get("/machines").json() if m["id"] == machine_id)["status"] == "idle"

    r = client.post(f"/orders/{order_id}/status", json={"status": "pending"}, headers=MANAGER)
    assert r.status_code == 409


def test_recalculate_material_request(client):
    request_id = _create_order(client)["material_request_id"]
    r = client.post(f"/material-requests/{request_id}/recalculate", json={"base_weight_kg": 50}, headers=MANAGER)
    assert r.status_code == 200
    assert [i["calculated_kg"] for i in r.json()] == [30.0, 20.0]

    r = client.post(
        f"/material-requests/{request_id}/items",
        json={"material_name": "Masterbatch", "percentage": 25},
        headers=MANAGER,
    )
    item_id = r.json()["id"]
    req = client.get(f"/material-requests/{request_id}").json()
    assert [i["calculated_kg"] for i in req["items"]] == [24.0, 16.0, 10.0]

    assert client.delete(f"/material-request-items/{item_id}", headers=SUPERVISOR).status_code == 403
    client.delete(f"/material-request-items/{item_id}", headers=MANAGER)
    req = client.get(f"/material-requests/{request_id}").json()
    assert [i["calculated_kg"] for i in req["items"]] == [30.0, 20.0]


def test_recipes_endpoints(client):
    r = client.post(
        "/recipes",
        json={
            "name": "Tray PET",
            "product": "Tray 1kg",
            "components": [{"material_name": "PET", "percentage": 95}, {"material_name": "Regrind", "percentage": 5}],
        },
        headers=MANAGER,
    )
    assert r.status_code == 200
    recipe_id = r.json()["id"]
    assert [c["material_name"] for c in r.json()["components"]] == ["PET", "Regrind"]

    dup = client.post("/recipes", json={"name": "Tray PET", "product": "Tray 1kg"}, headers=MANAGER)
    assert dup.status_code == 409

    client.post(f"/recipes/{recipe_id}/components", json={"material_name": "Slip", "percentage": 1}, headers=MANAGER)
    assert len(client.get(f"/recipes/{recipe_id}").json()["components"]) == 3
    assert [r["name"] for r in client.get("/recipes", params={"product": "Tray 1kg"}).json()] == ["Tray PET"]


def test_edit_and_delete_recipe(client):
    cup = client.get("/recipes", params={"product": "Cup 200ml"}).json()[0]
    request_id = _create_order(client)["material_request_id"]

    r = client.patch(f"/recipes/{cup['id']}", json={"description": "summer grade"}, headers=MANAGER)
    assert r.status_code == 200, r.text
    assert (r.json()["name"], r.json()["description"]) == (cup["name"], "summer grade")
    assert client.patch(f"/recipes/{cup['id']}", json={"name": "Lid 95mm PS"}, headers=MANAGER).status_code == 409
    assert client.patch(f"/recipes/{cup['id']}", json={"name": "x"}, headers=SUPERVISOR).status_code == 403

    component_id = cup["components"][0]["id"]
    r = client.patch(f"/recipe-components/{component_id}", json={"percentage": 65}, headers=MANAGER)
    assert r.json()["percentage"] == 65.0
    assert client.delete(f"/recipe-components/{component_id}", headers=MANAGER).json() == {"success": True}
    assert client.delete(f"/recipe-components/{component_id}", headers=MANAGER).status_code == 404
    assert client.patch("/recipe-components/999", json={"notes": "x"}, headers=MANAGER).status_code == 404

    assert client.delete(f"/recipes/{cup['id']}", headers=SUPERVISOR).status_code == 403
    assert client.delete(f"/recipes/{cup['id']}", headers=MANAGER).json() == {"success": True}
    assert client.get(f"/recipes/{cup['id']}").status_code == 404
    assert client.delete(f"/recipes/{cup['id']}", headers=MANAGER).status_code == 404

    # the request placed earlier keeps its copied items
    req = client.get(f"/material-requests/{request_id}").json()
    assert req["recipe_id"] is None
    assert [i["percentage"] for i in req["items"]] == [60.0, 40.0]


def test_clear_request_base_weight(client):
    request_id = _create_order(client)["material_request_id"]
    client.post(f"/material-requests/{request_id}/recalculate", json={"base_weight_kg": 50}, headers=MANAGER)

    r = client.patch(f"/material-requests/{request_id}", json={"base_weight_kg": None}, headers=MANAGER)
    assert r.status_code == 200, r.text
    assert r.json()["base_weight_kg"] is None
    assert [i["calculated_kg"] for i in r.json()["items"]] == [None, None]


def test_analytics_views(client):
    order_id = _create_order(client, quantity=300)["id"]
    report_id = _create_report(client)
    client.post(f"/reports/{report_id}/rows", json={"order_id": order_id, "actual_qty": 120}, headers=SUPERVISOR)

    orders = client.get("/analytics/orders").json()
    assert orders[0]["order_id"] == order_id
    assert orders[0]["machine_number"] == "TPA-01"
    assert orders[0]["remaining_qty"] == 180

    products = client.get("/analytics/products").json()
    assert products == [{"product": "Cup 200ml", "order_count": 1, "total_qty": 300, "total_completed": 120}]

    materials = client.get("/analytics/materials", params={"material_name": "PP homopolymer"}).json()
    assert materials[0]["request_count"] == 1


def test_admin_reconcile(client, monkeypatch):
    monkeypatch.setenv("ADMIN_TOKEN", "t0ken")
    assert client.post("/admin/reconcile").status_code == 401
    assert client.post("/admin/reconcile", headers={"X-Admin-Token": "wrong"}).status_code == 401

    _create_order(client)
    r = client.get("/admin/reconcile", headers={"X-Admin-Token": "t0ken"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "consistent"
    assert body["dry_run"] is True
    assert body["orders_checked"] == 1
