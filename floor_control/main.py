import logging
from decimal import Decimal
from typing import Generator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.orm import Session

from floor_control.config import configure_logging, load_app_config
from floor_control.contracts import (
    MachineCreate,
    MachineStatusUpdate,
    MaterialItemCreate,
    MaterialItemUpdate,
    MaterialRequestUpdate,
    OrderCreate,
    OrderStatusUpdate,
    OrderUpdate,
    RecalculateRequest,
    RecipeComponentIn,
    RecipeComponentUpdate,
    RecipeCreate,
    RecipeUpdate,
    ReportCreate,
    ReportRowCreate,
    ReportRowUpdate,
    SweepResponse,
)
from floor_control.db import build_engine, build_session_factory, load_db_config
from floor_control.machines import DuplicateMachineError, MachineNotFoundError, MachineRegistry
from floor_control.material_requests import (
    MaterialRequestItemNotFoundError,
    MaterialRequestNotFoundError,
    MaterialRequestService,
)
from floor_control.models import Base
from floor_control.order_ledger import (
    InvalidStatusTransitionError,
    OrderLedger,
    OrderNotFoundError,
    remaining_qty,
)
from floor_control.recipe_store import (
    DuplicateRecipeError,
    RecipeComponentNotFoundError,
    RecipeNotFoundError,
    RecipeStore,
)
from floor_control.reconciliation import ReconciliationCoordinator
from floor_control.report_ledger import ReportNotFoundError, ReportRowLedger, ReportRowNotFoundError
from floor_control.security import Principal, require_admin_token, require_manager, require_shift_staff
from floor_control.seed import run_seed
from floor_control.views import ensure_reporting_views

logger = logging.getLogger(__name__)

# --- Config / logging ---
_app_config = load_app_config()
configure_logging(_app_config)

# --- DB setup ---
_config = load_db_config()
_engine = build_engine(_config)
_session_factory = build_session_factory(_engine)
Base.metadata.create_all(bind=_engine)
ensure_reporting_views(_engine)

if _app_config.reconcile_on_startup:
    with _session_factory() as _startup_session:
        ReconciliationCoordinator(_startup_session).sweep()

# --- FastAPI app ---
app = FastAPI(title="Floor Control Production API")

_NOT_FOUND = (
    OrderNotFoundError,
    MachineNotFoundError,
    ReportNotFoundError,
    ReportRowNotFoundError,
    MaterialRequestNotFoundError,
    MaterialRequestItemNotFoundError,
    RecipeNotFoundError,
    RecipeComponentNotFoundError,
)
_CONFLICT = (InvalidStatusTransitionError, DuplicateRecipeError, DuplicateMachineError)
_DOMAIN_ERRORS = _NOT_FOUND + _CONFLICT + (ValueError,)


def get_session() -> Generator[Session, None, None]:
    with _session_factory() as session:
        yield session


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, _CONFLICT):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _num(value: Optional[Decimal]):
    return float(value) if value is not None else None


def _machine_dict(m) -> dict:
    return {"id": m.id, "number": m.number, "name": m.name, "status": m.status}


def _order_dict(o) -> dict:
    return {
        "id": o.id,
        "machine_id": o.machine_id,
        "product": o.product,
        "color": o.color,
        "mold_name": o.mold_name,
        "notes": o.notes,
        "quantity": o.quantity,
        "completed_qty": o.completed_qty,
        "remaining_qty": remaining_qty(o),
        "status": o.status,
        "created_by": o.created_by,
        "created_at": o.created_at.isoformat() if o.created_at else None,
    }


def _row_dict(r) -> dict:
    return {
        "id": r.id,
        "report_id": r.report_id,
        "order_id": r.order_id,
        "machine_number": r.machine_number,
        "mold_product": r.mold_product,
        "product_color": r.product_color,
        "plan_qty": r.plan_qty,
        "actual_qty": r.actual_qty,
        "standard_cycle": _num(r.standard_cycle),
        "actual_cycle": _num(r.actual_cycle),
        "downtime_min": r.downtime_min,
        "downtime_reason": r.downtime_reason,
        "defect_kg": _num(r.defect_kg),
        "changeover": r.changeover,
        "standard_weight": _num(r.standard_weight),
        "avg_weight": _num(r.avg_weight),
        "sort_order": r.sort_order,
        "revision": r.revision,
    }


def _report_dict(report, rows=None) -> dict:
    data = {
        "id": report.id,
        "user_id": report.user_id,
        "shift_date": report.shift_date.isoformat(),
        "shift_number": report.shift_number,
        "notes": report.notes,
    }
    if rows is not None:
        data["rows"] = [_row_dict(r) for r in rows]
    return data


def _recipe_dict(recipe, components) -> dict:
    return {
        "id": recipe.id,
        "name": recipe.name,
        "product": recipe.product,
        "description": recipe.description,
        "components": [
            {
                "id": c.id,
                "material_name": c.material_name,
                "percentage": _num(c.percentage),
                "weight_kg": _num(c.weight_kg),
                "notes": c.notes,
                "sort_order": c.sort_order,
            }
            for c in components
        ],
    }


def _item_dict(i) -> dict:
    return {
        "id": i.id,
        "request_id": i.request_id,
        "material_name": i.material_name,
        "percentage": _num(i.percentage),
        "calculated_kg": _num(i.calculated_kg),
        "actual_kg": _num(i.actual_kg),
        "batch_number": i.batch_number,
        "sort_order": i.sort_order,
    }


def _request_dict(request, items=None) -> dict:
    data = {
        "id": request.id,
        "order_id": request.order_id,
        "recipe_id": request.recipe_id,
        "product": request.product,
        "base_weight_kg": _num(request.base_weight_kg),
        "status": request.status,
        "notes": request.notes,
    }
    if items is not None:
        data["items"] = [_item_dict(i) for i in items]
    return data


@app.get("/health")
def health():
    return {"status": "ok"}


# --- Machines ---
@app.get("/machines")
def list_machines(session: Session = Depends(get_session)):
    return [_machine_dict(m) for m in MachineRegistry(session).list_machines()]


@app.post("/machines")
def create_machine(
    payload: MachineCreate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        machine = MachineRegistry(session).create_machine(payload.number, payload.name, payload.status)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _machine_dict(machine)


@app.post("/machines/{machine_id}/status")
def set_machine_status(
    machine_id: int,
    payload: MachineStatusUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        machine = MachineRegistry(session).set_status(machine_id, payload.status)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _machine_dict(machine)


@app.get("/machines/{machine_id}/orders")
def orders_for_machine(machine_id: int, session: Session = Depends(get_session)):
    return [_order_dict(o) for o in OrderLedger(session).orders_for_machine(machine_id)]


@app.get("/machines/{machine_id}/orders/active")
def active_orders_for_machine(machine_id: int, session: Session = Depends(get_session)):
    return [_order_dict(o) for o in OrderLedger(session).active_orders_for_machine(machine_id)]


# --- Orders ---
@app.get("/orders")
def list_orders(status: Optional[str] = Query(None), session: Session = Depends(get_session)):
    return [_order_dict(o) for o in OrderLedger(session).list_orders(status)]


@app.post("/orders")
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        placed = ReconciliationCoordinator(session).place_order(
            payload.machine_id,
            payload.product,
            payload.quantity,
            color=payload.color,
            mold_name=payload.mold_name,
            notes=payload.notes,
            created_by=principal.user_id,
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return {
        "id": placed.order.id,
        "material_request_id": placed.material_request.id if placed.material_request else None,
    }


@app.get("/orders/{order_id}")
def get_order(order_id: int, session: Session = Depends(get_session)):
    try:
        return _order_dict(OrderLedger(session).get_order(order_id))
    except OrderNotFoundError as exc:
        raise _http_error(exc) from exc


@app.patch("/orders/{order_id}")
def update_order(
    order_id: int,
    payload: OrderUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        order = OrderLedger(session).update_order(order_id, **payload.model_dump(exclude_unset=True))
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _order_dict(order)


@app.post("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        ReconciliationCoordinator(session).change_order_status(order_id, payload.status)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"success": True}


@app.get("/orders/{order_id}/material-request")
def material_request_for_order(order_id: int, session: Session = Depends(get_session)):
    try:
        OrderLedger(session).get_order(order_id)
    except OrderNotFoundError as exc:
        raise _http_error(exc) from exc
    service = MaterialRequestService(session)
    request = service.get_by_order(order_id)
    if request is None:
        return None
    return _request_dict(request, service.items(request.id))


# --- Shift reports ---
@app.get("/reports")
def list_reports(
    limit: int = Query(100),
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    limit = min(limit, 500)
    return [_report_dict(r) for r in ReportRowLedger(session).list_reports(limit)]


@app.post("/reports")
def create_report(
    payload: ReportCreate,
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    try:
        report = ReportRowLedger(session).create_report(
            payload.shift_date, payload.shift_number, user_id=principal.user_id, notes=payload.notes
        )
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _report_dict(report, rows=[])


@app.get("/reports/{report_id}")
def get_report(
    report_id: int,
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    ledger = ReportRowLedger(session)
    try:
        report = ledger.get_report(report_id)
    except ReportNotFoundError as exc:
        raise _http_error(exc) from exc
    return _report_dict(report, ledger.rows_for_report(report_id))


@app.delete("/reports/{report_id}")
def delete_report(
    report_id: int,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        deleted_rows = ReconciliationCoordinator(session).delete_report(report_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"success": True, "deleted_rows": deleted_rows}


@app.post("/reports/{report_id}/rows")
def add_report_row(
    report_id: int,
    payload: ReportRowCreate,
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    fields = payload.model_dump(exclude={"order_id", "actual_qty"}, exclude_none=True)
    try:
        result = ReconciliationCoordinator(session).add_report_row(
            report_id, order_id=payload.order_id, actual_qty=payload.actual_qty, **fields
        )
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"id": result.row.id, "reconciliation": result.reconciliation}


@app.patch("/report-rows/{row_id}")
def update_report_row(
    row_id: int,
    payload: ReportRowUpdate,
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    # null clears order_id; elsewhere it means "leave unchanged"
    fields = {
        k: v
        for k, v in payload.model_dump(exclude_unset=True).items()
        if v is not None or k == "order_id"
    }
    try:
        result = ReconciliationCoordinator(session).update_report_row(row_id, **fields)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    data = _row_dict(result.row)
    data["reconciliation"] = result.reconciliation
    return data


@app.delete("/report-rows/{row_id}")
def delete_report_row(
    row_id: int,
    principal: Principal = Depends(require_shift_staff),
    session: Session = Depends(get_session),
):
    try:
        status = ReconciliationCoordinator(session).delete_report_row(row_id)
    except _DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"success": True, "reconciliation": status}


# --- Recipes ---
@app.get("/recipes")
def list_recipes(product: Optional[str] = Query(None), session: Session = Depends(get_session)):
    store = RecipeStore(session)
    recipes = store.get_recipes_for_product(product) if product else store.list_recipes()
    return [_recipe_dict(r, store.get_recipe_components(r.id)) for r in recipes]


@app.get("/recipes/{recipe_id}")
def get_recipe(recipe_id: int, session: Session = Depends(get_session)):
    store = RecipeStore(session)
    try:
        recipe = store.get_recipe(recipe_id)
    except RecipeNotFoundError as exc:
        raise _http_error(exc) from exc
    return _recipe_dict(recipe, store.get_recipe_components(recipe_id))


@app.post("/recipes")
def create_recipe(
    payload: RecipeCreate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    store = RecipeStore(session)
    try:
        recipe = store.create_recipe(
            payload.name,
            payload.product,
            description=payload.description,
            components=[c.model_dump() for c in payload.components],
            created_by=principal.user_id,
        )
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _recipe_dict(recipe, store.get_recipe_components(recipe.id))


@app.post("/recipes/{recipe_id}/components")
def add_recipe_component(
    recipe_id: int,
    payload: RecipeComponentIn,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        component = RecipeStore(session).add_component(
            recipe_id,
            payload.material_name,
            percentage=payload.percentage,
            weight_kg=payload.weight_kg,
            notes=payload.notes,
        )
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return {"id": component.id, "recipe_id": recipe_id}


# null clears these; on other fields it means "leave unchanged"
_CLEARABLE = ("description", "notes", "weight_kg")


def _patch_fields(payload) -> dict:
    return {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None or k in _CLEARABLE}


@app.patch("/recipes/{recipe_id}")
def update_recipe(
    recipe_id: int,
    payload: RecipeUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    store = RecipeStore(session)
    try:
        recipe = store.update_recipe(recipe_id, **_patch_fields(payload))
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _recipe_dict(recipe, store.get_recipe_components(recipe_id))


@app.delete("/recipes/{recipe_id}")
def delete_recipe(
    recipe_id: int,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        RecipeStore(session).delete_recipe(recipe_id)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return {"success": True}


@app.patch("/recipe-components/{component_id}")
def update_recipe_component(
    component_id: int,
    payload: RecipeComponentUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        component = RecipeStore(session).update_component(component_id, **_patch_fields(payload))
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return {
        "id": component.id,
        "recipe_id": component.recipe_id,
        "material_name": component.material_name,
        "percentage": _num(component.percentage),
        "weight_kg": _num(component.weight_kg),
        "notes": component.notes,
        "sort_order": component.sort_order,
    }


@app.delete("/recipe-components/{component_id}")
def delete_recipe_component(
    component_id: int,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        RecipeStore(session).delete_component(component_id)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return {"success": True}


# --- Material requests ---
@app.get("/material-requests")
def list_material_requests(status: Optional[str] = Query(None), session: Session = Depends(get_session)):
    return [_request_dict(r) for r in MaterialRequestService(session).list_requests(status)]


@app.get("/material-requests/{request_id}")
def get_material_request(request_id: int, session: Session = Depends(get_session)):
    service = MaterialRequestService(session)
    try:
        request = service.get(request_id)
    except MaterialRequestNotFoundError as exc:
        raise _http_error(exc) from exc
    return _request_dict(request, service.items(request_id))


@app.patch("/material-requests/{request_id}")
def update_material_request(
    request_id: int,
    payload: MaterialRequestUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    service = MaterialRequestService(session)
    try:
        request = service.update_request(request_id, **payload.model_dump(exclude_unset=True))
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _request_dict(request, service.items(request_id))


@app.post("/material-requests/{request_id}/recalculate")
def recalculate_material_request(
    request_id: int,
    payload: RecalculateRequest,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    service = MaterialRequestService(session)
    try:
        items = service.recalculate(request_id, payload.base_weight_kg)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return [_item_dict(i) for i in items]


@app.post("/material-requests/{request_id}/items")
def add_material_item(
    request_id: int,
    payload: MaterialItemCreate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        item = MaterialRequestService(session).add_item(
            request_id, payload.material_name, payload.percentage, payload.calculated_kg
        )
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _item_dict(item)


@app.patch("/material-request-items/{item_id}")
def update_material_item(
    item_id: int,
    payload: MaterialItemUpdate,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        item = MaterialRequestService(session).update_item(item_id, **payload.model_dump(exclude_unset=True))
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return _item_dict(item)


@app.delete("/material-request-items/{item_id}")
def delete_material_item(
    item_id: int,
    principal: Principal = Depends(require_manager),
    session: Session = Depends(get_session),
):
    try:
        MaterialRequestService(session).delete_item(item_id)
        session.commit()
    except _DOMAIN_ERRORS as exc:
        session.rollback()
        raise _http_error(exc) from exc
    return {"success": True}


# --- Analytics (database views) ---
def _query_view(
    view_name: str,
    session: Session,
    where_clause: str = "",
    params: dict | None = None,
    limit: int = 100,
    order_by: str = "",
):
    limit = min(limit, 500)
    sql = f"SELECT * FROM {view_name}"
    if where_clause:
        sql = sql + " WHERE " + where_clause
    if order_by:
        sql = sql + " ORDER BY " + order_by
    sql = sql + " LIMIT :limit"
    params = params or {}
    params["limit"] = limit
    res = session.execute(text(sql), params)
    cols = res.keys()
    return [dict(zip(cols, row)) for row in res.fetchall()]


@app.get("/analytics/orders")
def analytics_orders(
    status: Optional[str] = Query(None),
    machine_id: Optional[int] = Query(None),
    limit: int = Query(100),
    session: Session = Depends(get_session),
):
    where = []
    params = {}
    if status:
        where.append("status = :status")
        params["status"] = status
    if machine_id is not None:
        where.append("machine_id = :machine_id")
        params["machine_id"] = machine_id
    where_clause = " AND ".join(where)
    return _query_view("vw_order_progress", session, where_clause, params, limit, "order_id DESC")


@app.get("/analytics/products")
def analytics_products(limit: int = Query(100), session: Session = Depends(get_session)):
    return _query_view("vw_product_analytics", session, limit=limit, order_by="total_qty DESC")


@app.get("/analytics/materials")
def analytics_materials(
    material_name: Optional[str] = Query(None),
    limit: int = Query(100),
    session: Session = Depends(get_session),
):
    where_clause = ""
    params = {}
    if material_name:
        where_clause = "material_name = :material_name"
        params["material_name"] = material_name
    return _query_view("vw_material_analytics", session, where_clause, params, limit, "material_name")


# --- Admin ---
def _sweep_response(result) -> dict:
    if result.consistent:
        status = "consistent"
    else:
        status = "drift" if result.dry_run else "repaired"
    return {
        "status": status,
        "dry_run": result.dry_run,
        "orders_checked": result.orders_checked,
        "rows_backfilled": result.rows_backfilled,
        "corrections": [
            {"order_id": c.order_id, "recorded_qty": c.recorded_qty, "live_qty": c.live_qty}
            for c in result.corrections
        ],
    }


@app.post("/admin/reconcile", response_model=SweepResponse, dependencies=[Depends(require_admin_token)])
def admin_reconcile(session: Session = Depends(get_session)):
    return _sweep_response(ReconciliationCoordinator(session).sweep())


@app.get("/admin/reconcile", response_model=SweepResponse, dependencies=[Depends(require_admin_token)])
def admin_reconcile_dry_run(session: Session = Depends(get_session)):
    return _sweep_response(ReconciliationCoordinator(session).sweep(dry_run=True))


@app.post("/admin/seed", dependencies=[Depends(require_admin_token)])
def admin_seed():
    try:
        inserted = run_seed(_engine)
    except Exception as exc:
        logger.exception("seed failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"status": "ok", "inserted": inserted}
