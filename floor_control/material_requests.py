import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from floor_control.material_calc import calculate, to_decimal
from floor_control.models import REQUEST_STATUSES, MaterialRequest, MaterialRequestItem, Order
from floor_control.recipe_store import RecipeStore

logger = logging.getLogger(__name__)

_MISSING = object()


class MaterialRequestNotFoundError(Exception):
    def __init__(self, request_id: int):
        super().__init__(f"No material request found with id={request_id!r}")
        self.request_id = request_id


class MaterialRequestItemNotFoundError(Exception):
    def __init__(self, item_id: int):
        super().__init__(f"No material request item found with id={item_id!r}")
        self.item_id = item_id


class MaterialRequestService:
    """Material requisitions generated from recipes and scaled to a base weight.

    ``calculated_kg`` is always recomputed over the full item set of a request,
    because normalising percentages to 100 depends on every item.
    """

    def __init__(self, session: Session, recipes: RecipeStore | None = None):
        self._session = session
        self._recipes = recipes or RecipeStore(session)

    def get(self, request_id: int) -> MaterialRequest:
        request = self._session.get(MaterialRequest, request_id)
        if request is None:
            raise MaterialRequestNotFoundError(request_id)
        return request

    def get_item(self, item_id: int) -> MaterialRequestItem:
        item = self._session.get(MaterialRequestItem, item_id)
        if item is None:
            raise MaterialRequestItemNotFoundError(item_id)
        return item

    def items(self, request_id: int) -> list[MaterialRequestItem]:
        stmt = (
            select(MaterialRequestItem)
            .where(MaterialRequestItem.request_id == request_id)
            .order_by(MaterialRequestItem.sort_order.asc(), MaterialRequestItem.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_by_order(self, order_id: int) -> MaterialRequest | None:
        stmt = (
            select(MaterialRequest)
            .where(MaterialRequest.order_id == order_id)
            .order_by(MaterialRequest.id.asc())
        )
        return self._session.execute(stmt).scalars().first()

    def list_requests(self, status: str | None = None) -> list[MaterialRequest]:
        stmt = select(MaterialRequest)
        if status:
            stmt = stmt.where(MaterialRequest.status == status)
        return list(self._session.execute(stmt.order_by(MaterialRequest.id.desc())).scalars().all())

    def on_order_created(self, order: Order) -> MaterialRequest | None:
        recipes = self._recipes.get_recipes_for_product(order.product)
        if not recipes:
            logger.debug("no recipe for product %r; order %s gets no material request", order.product, order.id)
            return None
        recipe = recipes[0]
        if len(recipes) > 1:
            logger.info(
                "product %r has %d recipes; using recipe %s (lowest id)", order.product, len(recipes), recipe.id
            )

        request = MaterialRequest(
            order_id=order.id,
            recipe_id=recipe.id,
            product=order.product,
            base_weight_kg=None,
            status="pending",
        )
        self._session.add(request)
        self._session.flush()

        for idx, component in enumerate(self._recipes.get_recipe_components(recipe.id)):
            self._session.add(
                MaterialRequestItem(
                    request_id=request.id,
                    material_name=component.material_name,
                    percentage=component.percentage,
                    calculated_kg=None,
                    sort_order=idx,
                )
            )
        self._session.flush()
        return request

    def recalculate(self, request_id: int, base_weight_kg) -> list[MaterialRequestItem]:
        request = self.get(request_id)
        request.base_weight_kg = to_decimal(base_weight_kg, "base_weight_kg")
        return self._write_back(request)

    def _write_back(self, request: MaterialRequest) -> list[MaterialRequestItem]:
        items = self.items(request.id)
        if request.base_weight_kg is None:
            self._session.flush()
            return items
        results = calculate(items, request.base_weight_kg)
        for item, result in zip(items, results):
            item.calculated_kg = result.calculated_kg
        self._session.flush()
        return items

    def update_request(self, request_id: int, status=_MISSING, notes=_MISSING, base_weight_kg=_MISSING) -> MaterialRequest:
        request = self.get(request_id)
        if status is not _MISSING:
            if status not in REQUEST_STATUSES:
                raise ValueError(f"Unsupported request status: {status!r}")
            request.status = status
        if notes is not _MISSING:
            request.notes = notes
        if base_weight_kg is not _MISSING:
            if base_weight_kg is None:
                # no base weight, no derived kilograms
                request.base_weight_kg = None
                for item in self.items(request.id):
                    item.calculated_kg = None
            else:
                self.recalculate(request_id, base_weight_kg)
        self._session.flush()
        return request

    def add_item(self, request_id: int, material_name: str, percentage=None, calculated_kg=None) -> MaterialRequestItem:
        request = self.get(request_id)
        material_name = (material_name or "").strip()
        if not material_name:
            raise ValueError("material_name must be non-empty")
        item = MaterialRequestItem(
            request_id=request.id,
            material_name=material_name,
            percentage=to_decimal(percentage, "percentage"),
            calculated_kg=to_decimal(calculated_kg, "calculated_kg") if calculated_kg is not None else None,
            sort_order=len(self.items(request.id)),
        )
        self._session.add(item)
        self._session.flush()
        self._write_back(request)
        return item

    def update_item(
        self,
        item_id: int,
        material_name=_MISSING,
        percentage=_MISSING,
        actual_kg=_MISSING,
        batch_number=_MISSING,
    ) -> MaterialRequestItem:
        item = self.get_item(item_id)
        if material_name is not _MISSING:
            material_name = (material_name or "").strip()
            if not material_name:
                raise ValueError("material_name must be non-empty")
            item.material_name = material_name
        if actual_kg is not _MISSING:
            item.actual_kg = to_decimal(actual_kg, "actual_kg") if actual_kg is not None else None
        if batch_number is not _MISSING:
            item.batch_number = batch_number
        if percentage is not _MISSING:
            item.percentage = to_decimal(percentage, "percentage")
            self._session.flush()
            self._write_back(self.get(item.request_id))
        self._session.flush()
        return item

    def delete_item(self, item_id: int) -> None:
        item = self.get_item(item_id)
        request = self.get(item.request_id)
        self._session.delete(item)
        self._session.flush()
        self._write_back(request)
