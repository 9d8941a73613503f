from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

MachineStatus = Literal["running", "idle", "maintenance", "changeover"]
OrderStatus = Literal["pending", "in_progress", "completed", "cancelled"]
RequestStatus = Literal["pending", "in_progress", "completed"]


class MachineCreate(BaseModel):
    number: str = Field(min_length=1, max_length=50)
    name: str | None = None
    status: MachineStatus = "idle"


class MachineStatusUpdate(BaseModel):
    status: MachineStatus


class OrderCreate(BaseModel):
    machine_id: int
    product: str = Field(min_length=1, max_length=200)
    quantity: int = Field(gt=0)
    color: str | None = None
    mold_name: str | None = None
    notes: str | None = None


class OrderUpdate(BaseModel):
    product: str | None = Field(default=None, min_length=1, max_length=200)
    quantity: int | None = Field(default=None, gt=0)
    color: str | None = None
    mold_name: str | None = None
    notes: str | None = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class ReportCreate(BaseModel):
    shift_date: date
    shift_number: int = Field(ge=1, le=3)
    notes: str | None = None


class _ReportRowFields(BaseModel):
    machine_number: str | None = None
    mold_product: str | None = None
    product_color: str | None = None
    plan_qty: int | None = Field(default=None, ge=0)
    standard_cycle: Decimal | None = None
    actual_cycle: Decimal | None = None
    downtime_min: int | None = Field(default=None, ge=0)
    downtime_reason: str | None = None
    defect_kg: Decimal | None = Field(default=None, ge=0)
    changeover: int | None = Field(default=None, ge=0)
    standard_weight: Decimal | None = None
    avg_weight: Decimal | None = None
    sort_order: int | None = None


class ReportRowCreate(_ReportRowFields):
    order_id: int | None = None
    actual_qty: int = Field(default=0, ge=0)


class ReportRowUpdate(_ReportRowFields):
    order_id: int | None = None
    actual_qty: int | None = Field(default=None, ge=0)


class RecipeComponentIn(BaseModel):
    material_name: str = Field(min_length=1, max_length=200)
    percentage: Decimal = Field(default=Decimal("0"), ge=0)
    weight_kg: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class RecipeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    product: str = Field(min_length=1, max_length=200)
    description: str | None = None
    components: list[RecipeComponentIn] = Field(default_factory=list)


class RecipeUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    product: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None


class RecipeComponentUpdate(BaseModel):
    material_name: str | None = Field(default=None, min_length=1, max_length=200)
    percentage: Decimal | None = Field(default=None, ge=0)
    weight_kg: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    sort_order: int | None = None


class MaterialRequestUpdate(BaseModel):
    status: RequestStatus | None = None
    notes: str | None = None
    base_weight_kg: Decimal | None = Field(default=None, ge=0)


class RecalculateRequest(BaseModel):
    base_weight_kg: Decimal = Field(ge=0)


class MaterialItemCreate(BaseModel):
    material_name: str = Field(min_length=1, max_length=200)
    percentage: Decimal = Field(default=Decimal("0"), ge=0)
    calculated_kg: Decimal | None = Field(default=None, ge=0)


class MaterialItemUpdate(BaseModel):
    material_name: str | None = Field(default=None, min_length=1, max_length=200)
    percentage: Decimal | None = Field(default=None, ge=0)
    actual_kg: Decimal | None = Field(default=None, ge=0)
    batch_number: str | None = None


class OrderCorrectionOut(BaseModel):
    order_id: int
    recorded_qty: int
    live_qty: int


class SweepResponse(BaseModel):
    status: str
    dry_run: bool
    orders_checked: int
    rows_backfilled: int
    corrections: list[OrderCorrectionOut]
