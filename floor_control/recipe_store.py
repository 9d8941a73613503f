import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from floor_control.material_calc import to_decimal
from floor_control.models import MaterialRequest, Recipe, RecipeComponent

logger = logging.getLogger(__name__)

_RECIPE_FIELDS = ("name", "product", "description")
_COMPONENT_FIELDS = ("material_name", "percentage", "weight_kg", "notes", "sort_order")


class RecipeNotFoundError(Exception):
    def __init__(self, recipe_id: int):
        super().__init__(f"No recipe found with id={recipe_id!r}")
        self.recipe_id = recipe_id


class RecipeComponentNotFoundError(Exception):
    def __init__(self, component_id: int):
        super().__init__(f"No recipe component found with id={component_id!r}")
        self.component_id = component_id


class DuplicateRecipeError(Exception):
    def __init__(self, name: str):
        super().__init__(f"Recipe named {name!r} already exists")
        self.name = name


class RecipeStore:
    """Recipes and their percentage components.

    Material requests copy a recipe's components when they are created, so
    editing or deleting a recipe never changes an existing request's items.
    """

    def __init__(self, session: Session):
        self._session = session

    def get_recipes_for_product(self, product: str) -> list[Recipe]:
        # Lowest id first: callers that need a single recipe take the first match.
        key = (product or "").strip()
        if not key:
            return []
        stmt = select(Recipe).where(Recipe.product == key).order_by(Recipe.id.asc())
        return list(self._session.execute(stmt).scalars().all())

    def get_recipe(self, recipe_id: int) -> Recipe:
        recipe = self._session.get(Recipe, recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        return recipe

    def get_recipe_components(self, recipe_id: int) -> list[RecipeComponent]:
        stmt = (
            select(RecipeComponent)
            .where(RecipeComponent.recipe_id == recipe_id)
            .order_by(RecipeComponent.sort_order.asc(), RecipeComponent.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def list_recipes(self) -> list[Recipe]:
        return list(self._session.execute(select(Recipe).order_by(Recipe.id.asc())).scalars().all())

    def create_recipe(
        self,
        name: str,
        product: str,
        description: str | None = None,
        components: Iterable[dict] | None = None,
        created_by: int | None = None,
    ) -> Recipe:
        name = (name or "").strip()
        product = (product or "").strip()
        if not name or not product:
            raise ValueError("recipe name and product must be non-empty")
        exists = self._session.execute(select(Recipe.id).where(Recipe.name == name)).first()
        if exists is not None:
            raise DuplicateRecipeError(name)

        recipe = Recipe(name=name, product=product, description=description, created_by=created_by)
        self._session.add(recipe)
        self._session.flush()
        for idx, c in enumerate(components or []):
            self.add_component(
                recipe.id,
                material_name=c["material_name"],
                percentage=c.get("percentage"),
                weight_kg=c.get("weight_kg"),
                notes=c.get("notes"),
                sort_order=c.get("sort_order", idx),
            )
        return recipe

    def add_component(
        self,
        recipe_id: int,
        material_name: str,
        percentage=None,
        weight_kg=None,
        notes: str | None = None,
        sort_order: int | None = None,
    ) -> RecipeComponent:
        self.get_recipe(recipe_id)
        material_name = (material_name or "").strip()
        if not material_name:
            raise ValueError("material_name must be non-empty")
        if sort_order is None:
            sort_order = len(self.get_recipe_components(recipe_id))
        component = RecipeComponent(
            recipe_id=recipe_id,
            material_name=material_name,
            percentage=to_decimal(percentage, "percentage"),
            weight_kg=to_decimal(weight_kg, "weight_kg") if weight_kg is not None else None,
            notes=notes,
            sort_order=sort_order,
        )
        self._session.add(component)
        self._session.flush()
        return component

    def update_recipe(self, recipe_id: int, **fields) -> Recipe:
        unknown = set(fields) - set(_RECIPE_FIELDS)
        if unknown:
            raise ValueError(f"fields not editable on a recipe: {sorted(unknown)}")
        recipe = self.get_recipe(recipe_id)
        for name in ("name", "product"):
            if name in fields:
                fields[name] = (fields[name] or "").strip()
                if not fields[name]:
                    raise ValueError(f"recipe {name} must be non-empty")
        if "name" in fields:
            clash = self._session.execute(
                select(Recipe.id).where(Recipe.name == fields["name"], Recipe.id != recipe_id)
            ).first()
            if clash is not None:
                raise DuplicateRecipeError(fields["name"])
        for name, value in fields.items():
            setattr(recipe, name, value)
        self._session.flush()
        return recipe

    def delete_recipe(self, recipe_id: int) -> None:
        recipe = self.get_recipe(recipe_id)
        # requests keep their copied items; only the back-reference goes
        detached = self._session.execute(
            update(MaterialRequest)
            .where(MaterialRequest.recipe_id == recipe_id)
            .values(recipe_id=None)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        self._session.delete(recipe)
        self._session.flush()
        logger.info("recipe %s deleted; %s material request(s) detached", recipe_id, detached)

    def get_component(self, component_id: int) -> RecipeComponent:
        component = self._session.get(RecipeComponent, component_id)
        if component is None:
            raise RecipeComponentNotFoundError(component_id)
        return component

    def update_component(self, component_id: int, **fields) -> RecipeComponent:
        unknown = set(fields) - set(_COMPONENT_FIELDS)
        if unknown:
            raise ValueError(f"fields not editable on a recipe component: {sorted(unknown)}")
        component = self.get_component(component_id)
        if "material_name" in fields:
            fields["material_name"] = (fields["material_name"] or "").strip()
            if not fields["material_name"]:
                raise ValueError("material_name must be non-empty")
        if "percentage" in fields:
            fields["percentage"] = to_decimal(fields["percentage"], "percentage")
        if "weight_kg" in fields and fields["weight_kg"] is not None:
            fields["weight_kg"] = to_decimal(fields["weight_kg"], "weight_kg")
        for name, value in fields.items():
            setattr(component, name, value)
        self._session.flush()
        return component

    def delete_component(self, component_id: int) -> None:
        component = self.get_component(component_id)
        self._session.delete(component)
        self._session.flush()
