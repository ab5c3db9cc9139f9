import os

# Keep main.py's import-time table creation away from the dev database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import attendance
import catalog
import models
from catalog import Catalog, CatalogCombo, CatalogEvent, CatalogWorkshop, ComboItemRef
from database import Base, get_db
from schemas import ComboItemIn

logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    catalog.catalog_cache.invalidate()
    session = session_factory()
    yield session
    session.close()
    catalog.catalog_cache.invalidate()


@pytest.fixture
def fest(db):
    """Starter Pack: Hackathon (₹100) + Robotics workshop (₹150) for ₹200, excludes Code Golf."""
    hackathon = catalog.create_event(db, "Hackathon", "tech", Decimal("100"))
    treasure = catalog.create_event(db, "Treasure Hunt", "non_tech", Decimal("80"))
    code_golf = catalog.create_event(db, "Code Golf", "tech", Decimal("60"))
    robotics = catalog.create_workshop(db, "Robotics", Decimal("150"))
    photo = catalog.create_workshop(db, "Photography", Decimal("120"))
    starter = catalog.create_combo(
        db, "Starter Pack", Decimal("200"),
        [
            ComboItemIn(target_type="event", target_id=hackathon.id),
            ComboItemIn(target_type="workshop", target_id=robotics.id),
        ],
        excluded_event_ids=[code_golf.id],
    )
    arts = catalog.create_combo(
        db, "Arts Pass", Decimal("150"),
        [
            ComboItemIn(target_type="event", target_id=treasure.id),
            ComboItemIn(target_type="workshop", target_id=photo.id),
        ],
    )
    return SimpleNamespace(
        e1=hackathon.id, e2=treasure.id, e3=code_golf.id,
        w1=robotics.id, w2=photo.id,
        starter=starter.id, arts=arts.id,
    )


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(name: str = "Asha") -> models.User:
        counter["n"] += 1
        user = models.User(
            name=name,
            email=f"{name.lower()}{counter['n']}@college.edu",
            phone=f"98765{counter['n']:05d}",
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def starter_catalog():
    """The Starter Pack catalog without a database."""
    return Catalog(
        events=[
            CatalogEvent(id="E1", name="Hackathon", category="tech", price=Decimal("100")),
            CatalogEvent(id="E2", name="Treasure Hunt", category="non_tech", price=Decimal("80")),
            CatalogEvent(id="E3", name="Code Golf", category="tech", price=Decimal("60")),
            CatalogEvent(id="E4", name="Food Stall", category="food", price=None),
        ],
        workshops=[
            CatalogWorkshop(id="W1", name="Robotics", price=Decimal("150")),
            CatalogWorkshop(id="W2", name="Photography", price=Decimal("120")),
        ],
        combos=[
            CatalogCombo(
                id="C1", name="Starter Pack", price=Decimal("200"),
                items=(
                    ComboItemRef(target_type="event", target_id="E1"),
                    ComboItemRef(target_type="workshop", target_id="W1"),
                ),
                excluded_event_ids=frozenset({"E3"}),
            ),
            CatalogCombo(
                id="C2", name="Arts Pass", price=Decimal("150"),
                items=(
                    ComboItemRef(target_type="event", target_id="E2"),
                    ComboItemRef(target_type="workshop", target_id="W2"),
                ),
            ),
            CatalogCombo(
                id="C3", name="Hacker Bundle", price=Decimal("90"),
                items=(ComboItemRef(target_type="event", target_id="E1"),),
            ),
        ],
    )


@pytest.fixture
def client(session_factory, clock, monkeypatch):
    import main

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    catalog.catalog_cache.invalidate()
    main.app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(main, "scanners", attendance.ScannerRegistry(clock=clock))
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
    catalog.catalog_cache.invalidate()
