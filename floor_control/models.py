from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

MACHINE_STATUSES = ("running", "idle", "maintenance", "changeover")
ORDER_STATUSES = ("pending", "in_progress", "completed", "cancelled")
REQUEST_STATUSES = ("pending", "in_progress", "completed")


class Base(DeclarativeBase):
    pass


class Machine(Base):
    __tablename__ = "machine"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    orders: Mapped[list["Order"]] = relationship(back_populates="machine")


class Order(Base):
    __tablename__ = "machine_order"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    machine_id: Mapped[int] = mapped_column(Integer, ForeignKey("machine.id"), nullable=False)
    product: Mapped[str] = mapped_column(String(200), nullable=False)
    color: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mold_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Maintained by OrderLedger.increment/decrement_completed_qty and the repair sweep only.
    completed_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    machine: Mapped["Machine"] = relationship(back_populates="orders")

    __table_args__ = (
        Index("ix_order_machine_status", "machine_id", "status"),
        Index("ix_order_product", "product"),
    )


class Recipe(Base):
    __tablename__ = "recipe"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    product: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    components: Mapped[list["RecipeComponent"]] = relationship(
        back_populates="recipe",
        cascade="all, delete-orphan",
        order_by=lambda: [RecipeComponent.sort_order, RecipeComponent.id],
    )

    __table_args__ = (Index("ix_recipe_product", "product"),)


class RecipeComponent(Base):
    __tablename__ = "recipe_component"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipe_id: Mapped[int] = mapped_column(Integer, ForeignKey("recipe.id"), nullable=False)
    material_name: Mapped[str] = mapped_column(String(200), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False, default=Decimal("0"))
    weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    recipe: Mapped["Recipe"] = relationship(back_populates="components")


class MaterialRequest(Base):
    __tablename__ = "material_request"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("machine_order.id"), nullable=True
    )
    recipe_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("recipe.id"), nullable=True)
    product: Mapped[str] = mapped_column(String(200), nullable=False)
    base_weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    items: Mapped[list["MaterialRequestItem"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by=lambda: [MaterialRequestItem.sort_order, MaterialRequestItem.id],
    )

    __table_args__ = (Index("ix_material_request_order", "order_id"),)


class MaterialRequestItem(Base):
    __tablename__ = "material_request_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("material_request.id"), nullable=False
    )
    material_name: Mapped[str] = mapped_column(String(200), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 3), nullable=False, default=Decimal("0"))
    calculated_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    actual_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3), nullable=True)
    batch_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    request: Mapped["MaterialRequest"] = relationship(back_populates="items")


class ShiftReport(Base):
    __tablename__ = "shift_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    shift_number: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    rows: Mapped[list["ShiftReportRow"]] = relationship(
        back_populates="report",
        order_by=lambda: [ShiftReportRow.sort_order, ShiftReportRow.id],
    )

    __table_args__ = (Index("ix_shift_report_date", "shift_date"),)


class ShiftReportRow(Base):
    __tablename__ = "shift_report_row"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(Integer, ForeignKey("shift_report.id"), nullable=False)
    order_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("machine_order.id"), nullable=True
    )
    machine_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    mold_product: Mapped[str | None] = mapped_column(String(200), nullable=True)
    product_color: Mapped[str | None] = mapped_column(String(100), nullable=True)
    plan_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    standard_cycle: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    actual_cycle: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    downtime_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    downtime_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    defect_kg: Mapped[Decimal] = mapped_column(Numeric(10, 3), nullable=False, default=Decimal("0"))
    changeover: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    standard_weight: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    avg_weight: Mapped[Decimal | None] = mapped_column(Numeric(10, 3), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    report: Mapped["ShiftReport"] = relationship(back_populates="rows")

    __table_args__ = (
        Index("ix_report_row_report", "report_id"),
        Index("ix_report_row_order", "order_id"),
        # ids are journal keys; never hand a deleted row's id to a new one
        {"sqlite_autoincrement": True},
    )


class ReconciliationEvent(Base):
    __tablename__ = "reconciliation_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No FK: the journal outlives deleted rows. Row ids are never reused.
    row_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="live")
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "row_id", "operation", "revision", "order_id", name="uq_reconciliation_row_op"
        ),
        Index("ix_reconciliation_order", "order_id"),
    )
