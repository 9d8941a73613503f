from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session

from floor_control.db import build_session_factory
from floor_control.models import Base, Machine, Recipe, RecipeComponent

MACHINES = [
    ("TPA-01", "Injection molder 1"),
    ("TPA-02", "Injection molder 2"),
    ("TPA-03", "Injection molder 3"),
    ("TPA-04", "Injection molder 4"),
    ("TPA-05", "Thermoformer 1"),
]

# name, product, [(material, percentage)]
RECIPES = [
    ("Cup 200ml PP", "Cup 200ml", [("PP homopolymer", "60"), ("PP random copolymer", "40")]),
    (
        "Lid 95mm PS",
        "Lid 95mm",
        [("GPPS", "70"), ("HIPS", "28"), ("White masterbatch", "2")],
    ),
    ("Container 500ml PP", "Container 500ml", [("PP homopolymer", "97"), ("Clarifier", "3")]),
]


def _ensure_machine(session: Session, number: str, name: str) -> bool:
    existing = session.query(Machine).filter_by(number=number).first()
    if existing:
        return False
    session.add(Machine(number=number, name=name, status="idle"))
    session.flush()
    return True


def _ensure_recipe(session: Session, name: str, product: str, components) -> tuple[bool, int]:
    existing = session.query(Recipe).filter_by(name=name).first()
    if existing:
        return False, 0
    recipe = Recipe(name=name, product=product, description="demo recipe")
    session.add(recipe)
    session.flush()
    for idx, (material, pct) in enumerate(components):
        session.add(
            RecipeComponent(
                recipe_id=recipe.id,
                material_name=material,
                percentage=Decimal(pct),
                sort_order=idx,
            )
        )
    session.flush()
    return True, len(components)


def seed(session: Session) -> Dict[str, int]:
    counts: Dict[str, int] = {"machine": 0, "recipe": 0, "recipe_component": 0}
    for number, name in MACHINES:
        if _ensure_machine(session, number, name):
            counts["machine"] += 1
    for name, product, components in RECIPES:
        created, n_components = _ensure_recipe(session, name, product, components)
        if created:
            counts["recipe"] += 1
            counts["recipe_component"] += n_components
    session.commit()
    return counts


def run_seed(engine) -> Dict[str, int]:
    """Run idempotent seed using given engine. Returns counts of inserted rows."""
    Base.metadata.create_all(bind=engine)
    SessionFactory = build_session_factory(engine)
    with SessionFactory() as session:
        return seed(session)


if __name__ == "__main__":
    from floor_control.db import build_engine, load_db_config

    config = load_db_config()
    engine = build_engine(config)
    counts = run_seed(engine)
    print(counts)
