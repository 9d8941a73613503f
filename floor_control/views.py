from sqlalchemy import text

_VIEWS = {
    "vw_order_progress": """
    SELECT
        o.id AS order_id,
        o.machine_id,
        m.number AS machine_number,
        m.name AS machine_name,
        o.product,
        o.color,
        o.quantity,
        o.completed_qty,
        CASE WHEN o.quantity > o.completed_qty THEN o.quantity - o.completed_qty ELSE 0 END AS remaining_qty,
        o.status,
        o.created_at
    FROM machine_order o
    JOIN machine m ON o.machine_id = m.id
    """,
    "vw_product_analytics": """
    SELECT
        o.product,
        COUNT(o.id) AS order_count,
        SUM(o.quantity) AS total_qty,
        SUM(o.completed_qty) AS total_completed
    FROM machine_order o
    WHERE o.status <> 'cancelled'
    GROUP BY o.product
    """,
    "vw_material_analytics": """
    SELECT
        i.material_name,
        COUNT(DISTINCT i.request_id) AS request_count,
        SUM(i.calculated_kg) AS total_calc_kg,
        SUM(i.actual_kg) AS total_actual_kg
    FROM material_request_item i
    GROUP BY i.material_name
    """,
}


def ensure_reporting_views(engine) -> None:
    """Create or replace the analytics views over orders and material requests.

    Idempotent and safe to run on each startup.
    """
    dialect_name = getattr(getattr(engine, "dialect", None), "name", None)
    with engine.begin() as conn:
        for view_name, select_sql in _VIEWS.items():
            # SQLite doesn't support CREATE OR REPLACE VIEW; use DROP/CREATE instead
            if dialect_name == "sqlite":
                conn.execute(text(f"DROP VIEW IF EXISTS {view_name}"))
                conn.execute(text(f"CREATE VIEW {view_name} AS {select_sql}"))
            else:
                conn.execute(text(f"CREATE OR REPLACE VIEW {view_name} AS {select_sql}"))


__all__ = ["ensure_reporting_views"]
