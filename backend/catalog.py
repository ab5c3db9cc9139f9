"""Read-only catalog snapshot used by every resolution pass.

Rows are copied out of the database into frozen pydantic models so the
resolver and pricing code never touch the session and never see a price
change halfway through a pass.
"""
import logging
import threading
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session, selectinload

import models
from errors import CatalogConfigError, NotFoundError

logger = logging.getLogger(__name__)

ITEM_TYPES = ("event", "workshop")


def _money(v) -> Decimal:
    """Missing prices count as zero."""
    if v is None or v == "":
        return Decimal("0")
    return Decimal(str(v))


class CatalogEvent(BaseModel):
    id: str
    name: str
    category: str = "tech"
    price: Decimal = Decimal("0")
    capacity: Optional[int] = None
    is_active: bool = True

    model_config = {"frozen": True}

    @field_validator("price", mode="before")
    @classmethod
    def price_defaults_to_zero(cls, v):
        return _money(v)


class CatalogWorkshop(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")
    capacity: Optional[int] = None
    is_active: bool = True

    model_config = {"frozen": True}

    @field_validator("price", mode="before")
    @classmethod
    def price_defaults_to_zero(cls, v):
        return _money(v)


class ComboItemRef(BaseModel):
    target_type: str
    target_id: str

    model_config = {"frozen": True}


class CatalogCombo(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")
    capacity: Optional[int] = None
    is_active: bool = True
    items: Tuple[ComboItemRef, ...] = ()
    excluded_event_ids: FrozenSet[str] = frozenset()

    model_config = {"frozen": True}

    @field_validator("price", mode="before")
    @classmethod
    def price_defaults_to_zero(cls, v):
        return _money(v)

    @property
    def item_ids(self) -> frozenset:
        return frozenset(item.target_id for item in self.items)

    def item_ids_of(self, target_type: str) -> List[str]:
        return [item.target_id for item in self.items if item.target_type == target_type]


class Catalog:
    """Immutable lookup table of events, workshops and combos."""

    def __init__(self, events=(), workshops=(), combos=()):
        self.events: Dict[str, CatalogEvent] = {e.id: e for e in events}
        self.workshops: Dict[str, CatalogWorkshop] = {w.id: w for w in workshops}
        self.combos: Dict[str, CatalogCombo] = {c.id: c for c in combos}

    def event(self, event_id: str) -> Optional[CatalogEvent]:
        return self.events.get(event_id)

    def workshop(self, workshop_id: str) -> Optional[CatalogWorkshop]:
        return self.workshops.get(workshop_id)

    def combo(self, combo_id: str) -> Optional[CatalogCombo]:
        return self.combos.get(combo_id)

    def item(self, target_type: str, target_id: str):
        if target_type == "event":
            return self.event(target_id)
        if target_type == "workshop":
            return self.workshop(target_id)
        if target_type == "combo":
            return self.combo(target_id)
        return None

    def display_name(self, target_type: str, target_id: str) -> str:
        item = self.item(target_type, target_id)
        return item.name if item else target_id


# ---------------------------------------------------------------------------
# Catalog store (database reads)
# ---------------------------------------------------------------------------

def event_snapshot(row: models.Event) -> CatalogEvent:
    return CatalogEvent(
        id=row.id, name=row.name, category=row.category, price=row.price,
        capacity=row.max_participants, is_active=row.is_active,
    )


def workshop_snapshot(row: models.Workshop) -> CatalogWorkshop:
    return CatalogWorkshop(
        id=row.id, name=row.title, price=row.fee,
        capacity=row.capacity, is_active=row.is_active,
    )


def combo_snapshot(row: models.Combo) -> CatalogCombo:
    return CatalogCombo(
        id=row.id, name=row.name, price=row.price,
        capacity=row.capacity, is_active=row.is_active,
        items=tuple(
            ComboItemRef(target_type=i.target_type, target_id=i.target_id) for i in row.items
        ),
        excluded_event_ids=frozenset(x.target_id for x in row.exclusions),
    )


def list_events(db: Session, active_only: bool = True) -> List[CatalogEvent]:
    query = db.query(models.Event)
    if active_only:
        query = query.filter(models.Event.is_active.is_(True))
    return [event_snapshot(r) for r in query.order_by(models.Event.name).all()]


def list_workshops(db: Session, active_only: bool = True) -> List[CatalogWorkshop]:
    query = db.query(models.Workshop)
    if active_only:
        query = query.filter(models.Workshop.is_active.is_(True))
    return [workshop_snapshot(r) for r in query.order_by(models.Workshop.title).all()]


def list_combos(db: Session, active_only: bool = True) -> List[CatalogCombo]:
    query = db.query(models.Combo).options(
        selectinload(models.Combo.items), selectinload(models.Combo.exclusions)
    )
    if active_only:
        query = query.filter(models.Combo.is_active.is_(True))
    return [combo_snapshot(r) for r in query.order_by(models.Combo.name).all()]


def load_catalog(db: Session, active_only: bool = True) -> Catalog:
    return Catalog(
        events=list_events(db, active_only),
        workshops=list_workshops(db, active_only),
        combos=list_combos(db, active_only),
    )


class CatalogCache:
    """Read-through cache of the catalog snapshot.

    Browsing endpoints may reuse the cached snapshot; anything that prices or
    persists a selection calls ``get(db, fresh=True)``. Catalog writes call
    ``invalidate()``.
    """

    def __init__(self, loader=load_catalog):
        self._loader = loader
        self._lock = threading.Lock()
        self._snapshots: Dict[bool, Catalog] = {}

    def get(self, db: Session, active_only: bool = True, fresh: bool = False) -> Catalog:
        with self._lock:
            cached = self._snapshots.get(active_only)
        if cached is not None and not fresh:
            return cached
        snapshot = self._loader(db, active_only)
        with self._lock:
            self._snapshots[active_only] = snapshot
        return snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshots.clear()
        logger.info("Catalog cache invalidated")


catalog_cache = CatalogCache()


# ---------------------------------------------------------------------------
# Authoring
# ---------------------------------------------------------------------------

def validate_combo_definition(db: Session, items, excluded_event_ids) -> None:
    """Reject combos whose items and exclusions overlap or point at nothing."""
    seen = set()
    for item in items:
        if item.target_type not in ITEM_TYPES:
            raise CatalogConfigError(f"Unknown combo item type '{item.target_type}'.")
        key = (item.target_type, item.target_id)
        if key in seen:
            raise CatalogConfigError(f"{item.target_type} {item.target_id} is listed twice in the combo.")
        seen.add(key)

        model = models.Event if item.target_type == "event" else models.Workshop
        if db.get(model, item.target_id) is None:
            raise CatalogConfigError(f"Combo item {item.target_type} {item.target_id} does not exist.")

    included_events = {tid for ttype, tid in seen if ttype == "event"}
    overlap = included_events & set(excluded_event_ids)
    if overlap:
        raise CatalogConfigError(
            "Events cannot be both included in and excluded by the same combo: "
            + ", ".join(sorted(overlap))
        )
    for event_id in excluded_event_ids:
        if db.get(models.Event, event_id) is None:
            raise CatalogConfigError(f"Excluded event {event_id} does not exist.")


def check_price_and_capacity(name, price, capacity) -> None:
    if price is not None and Decimal(str(price)) < 0:
        raise CatalogConfigError(f"{name}: price cannot be negative.")
    if capacity is not None and capacity < 0:
        raise CatalogConfigError(f"{name}: capacity cannot be negative.")


def create_event(db: Session, name, category, price=None, capacity=None, is_active=True) -> models.Event:
    check_price_and_capacity(name, price, capacity)
    row = models.Event(
        name=name, category=category, price=price,
        max_participants=capacity, is_active=is_active,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    catalog_cache.invalidate()
    return row


def create_workshop(db: Session, name, price=None, capacity=None, is_active=True) -> models.Workshop:
    check_price_and_capacity(name, price, capacity)
    row = models.Workshop(title=name, fee=price, capacity=capacity, is_active=is_active)
    db.add(row)
    db.commit()
    db.refresh(row)
    catalog_cache.invalidate()
    return row


def create_combo(db: Session, name, price, items, excluded_event_ids=(),
                 capacity=None, is_active=True) -> models.Combo:
    check_price_and_capacity(name, price, capacity)
    excluded_event_ids = list(dict.fromkeys(excluded_event_ids))
    validate_combo_definition(db, items, excluded_event_ids)

    row = models.Combo(name=name, price=price, capacity=capacity, is_active=is_active)
    row.items = [
        models.ComboItem(target_type=item.target_type, target_id=item.target_id, position=index)
        for index, item in enumerate(items)
    ]
    row.exclusions = [models.ComboExclusion(target_id=event_id) for event_id in excluded_event_ids]
    db.add(row)
    db.commit()
    db.refresh(row)
    catalog_cache.invalidate()
    logger.info("Combo %s created with %d item(s)", row.id, len(row.items))
    return row


_ACTIVE_MODELS = {"events": models.Event, "workshops": models.Workshop, "combos": models.Combo}


def set_active(db: Session, kind: str, item_id: str, is_active: bool):
    model = _ACTIVE_MODELS.get(kind)
    if model is None:
        raise NotFoundError(f"Unknown catalog kind '{kind}'.")
    row = db.get(model, item_id)
    if row is None:
        raise NotFoundError(f"{kind[:-1].capitalize()} not found.")
    row.is_active = is_active
    db.commit()
    db.refresh(row)
    catalog_cache.invalidate()
    return row
