"""Turns a Selection into the set of things the participant is billed for."""
from decimal import Decimal
from typing import Optional, Tuple

from pydantic import BaseModel

from catalog import Catalog, CatalogCombo
from selection import Selection

EXCLUDED = "excluded"
INCLUDED = "included"


class BillableLine(BaseModel):
    """One directly selected event or workshop."""
    target_type: str
    target_id: str
    name: str
    price: Decimal

    model_config = {"frozen": True}


class EffectiveBillableSet(BaseModel):
    lines: Tuple[BillableLine, ...] = ()
    combos: Tuple[CatalogCombo, ...] = ()
    # Directly selected events that a chosen combo excludes
    conflicts: Tuple[str, ...] = ()

    model_config = {"frozen": True}


def _combo_item_ids(selection: Selection, catalog: Catalog) -> frozenset:
    ids = set()
    for combo_id in selection.combo_ids:
        combo = catalog.combo(combo_id)
        if combo is not None:
            ids |= combo.item_ids
    return frozenset(ids)


def _combo_exclusions(selection: Selection, catalog: Catalog) -> frozenset:
    ids = set()
    for combo_id in selection.combo_ids:
        combo = catalog.combo(combo_id)
        if combo is not None:
            ids |= combo.excluded_event_ids
    return frozenset(ids)


def resolve(selection: Selection, catalog: Catalog) -> EffectiveBillableSet:
    """Compute the effective billable set.

    Direct selections bundled in a chosen combo are dropped, duplicates across
    the tech / non-tech lists collapse, and ids missing from the catalog are
    ignored. Each chosen combo is billed once at its own price whatever the
    state of its items.
    """
    absorbed = _combo_item_ids(selection, catalog)
    excluded = _combo_exclusions(selection, catalog)

    lines = []
    seen = set()
    conflicts = []
    for event_id in selection.tech_event_ids + selection.non_tech_event_ids:
        if event_id in seen or event_id in absorbed:
            continue
        event = catalog.event(event_id)
        if event is None:
            continue
        seen.add(event_id)
        if event_id in excluded:
            conflicts.append(event_id)
        lines.append(BillableLine(target_type="event", target_id=event.id, name=event.name, price=event.price))

    for workshop_id in selection.workshop_ids:
        if workshop_id in seen or workshop_id in absorbed:
            continue
        workshop = catalog.workshop(workshop_id)
        if workshop is None:
            continue
        seen.add(workshop_id)
        lines.append(BillableLine(
            target_type="workshop", target_id=workshop.id, name=workshop.name, price=workshop.price,
        ))

    combos = []
    for combo_id in dict.fromkeys(selection.combo_ids):
        combo = catalog.combo(combo_id)
        if combo is not None:
            combos.append(combo)

    return EffectiveBillableSet(lines=tuple(lines), combos=tuple(combos), conflicts=tuple(conflicts))


def disable_reason(event_id: str, selection: Selection, catalog: Catalog) -> Optional[str]:
    """Why an event checkbox is disabled: 'excluded', 'included' or None."""
    if event_id in _combo_exclusions(selection, catalog):
        return EXCLUDED
    if event_id in _combo_item_ids(selection, catalog):
        return INCLUDED
    return None


def disable_reasons(selection: Selection, catalog: Catalog) -> dict:
    reasons = {}
    for event_id in catalog.events:
        reason = disable_reason(event_id, selection, catalog)
        if reason is not None:
            reasons[event_id] = reason
    return reasons
