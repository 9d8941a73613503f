import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# keep floor_control.main off the on-disk default database
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from floor_control.db import enable_sqlite_savepoints
from floor_control.models import Base, Machine, Recipe, RecipeComponent


def make_engine():
    eng = create_engine(
        "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(bind=eng)
    return eng


@pytest.fixture(scope="function")
def engine():
    eng = make_engine()
    yield eng
    Base.metadata.drop_all(bind=eng)


@pytest.fixture(scope="function")
def session(engine):
    SessionFactory = sessionmaker(bind=engine)
    with SessionFactory() as sess:
        yield sess


@pytest.fixture(scope="function")
def seeded_session(session):
    session.add_all(
        [
            Machine(number="TPA-01", name="Injection molder 1", status="idle"),
            Machine(number="TPA-02", name="Injection molder 2", status="idle"),
        ]
    )
    cup = Recipe(name="Cup 200ml PP", product="Cup 200ml")
    session.add(cup)
    session.flush()
    session.add_all(
        [
            RecipeComponent(
                recipe_id=cup.id, material_name="PP homopolymer", percentage=Decimal("60"), sort_order=0
            ),
            RecipeComponent(
                recipe_id=cup.id, material_name="PP random copolymer", percentage=Decimal("40"), sort_order=1
            ),
        ]
    )
    session.commit()
    yield session
