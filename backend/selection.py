"""Participant selections as immutable values.

A ``Selection`` is never edited in place: every change returns a new value,
and the resolver, pricing and ledger code all take it as an argument.

Combo choice is a tagged variant. Public self-registration must carry exactly
one combo (``OneCombo``); coordinators may register a participant for no
combo, one combo, or several (``ManyCombos``) as long as the combos do not
share items or exclude each other's items.
"""
from typing import Literal, Tuple, Union

from pydantic import BaseModel, Field

from catalog import Catalog
from errors import SelectionError


class NoCombo(BaseModel):
    kind: Literal["none"] = "none"

    model_config = {"frozen": True}

    @property
    def combo_ids(self) -> Tuple[str, ...]:
        return ()


class OneCombo(BaseModel):
    kind: Literal["one"] = "one"
    combo_id: str

    model_config = {"frozen": True}

    @property
    def combo_ids(self) -> Tuple[str, ...]:
        return (self.combo_id,)


class ManyCombos(BaseModel):
    kind: Literal["many"] = "many"
    combo_ids: Tuple[str, ...] = ()

    model_config = {"frozen": True}


ComboSelection = Union[NoCombo, OneCombo, ManyCombos]


def _without(ids: Tuple[str, ...], drop) -> Tuple[str, ...]:
    return tuple(i for i in ids if i not in drop)


def _with(ids: Tuple[str, ...], item_id: str) -> Tuple[str, ...]:
    return ids if item_id in ids else ids + (item_id,)


class Selection(BaseModel):
    tech_event_ids: Tuple[str, ...] = ()
    non_tech_event_ids: Tuple[str, ...] = ()
    workshop_ids: Tuple[str, ...] = ()
    combos: ComboSelection = Field(default_factory=NoCombo, discriminator="kind")

    model_config = {"frozen": True}

    @property
    def combo_ids(self) -> Tuple[str, ...]:
        return self.combos.combo_ids

    @property
    def event_ids(self) -> Tuple[str, ...]:
        return self.tech_event_ids + tuple(
            e for e in self.non_tech_event_ids if e not in self.tech_event_ids
        )

    # ── transitions ──────────────────────────────────────────────────────────

    def _absorbed_ids(self, catalog: Catalog, combo_ids) -> frozenset:
        absorbed = set()
        for combo_id in combo_ids:
            combo = catalog.combo(combo_id)
            if combo is not None:
                absorbed |= combo.item_ids
        return frozenset(absorbed)

    def _drop_absorbed(self, catalog: Catalog, combos: ComboSelection) -> "Selection":
        absorbed = self._absorbed_ids(catalog, combos.combo_ids)
        return self.model_copy(update={
            "combos": combos,
            "tech_event_ids": _without(self.tech_event_ids, absorbed),
            "non_tech_event_ids": _without(self.non_tech_event_ids, absorbed),
            "workshop_ids": _without(self.workshop_ids, absorbed),
        })

    def choose_combo(self, combo_id: str, catalog: Catalog) -> "Selection":
        """Public flow: replace the current combo and drop the items it absorbs."""
        return self._drop_absorbed(catalog, OneCombo(combo_id=combo_id))

    def add_combo(self, combo_id: str, catalog: Catalog) -> "Selection":
        """Coordinator flow: add another combo alongside the existing ones."""
        combo_ids = self.combo_ids
        if combo_id not in combo_ids:
            combo_ids = combo_ids + (combo_id,)
        return self._drop_absorbed(catalog, ManyCombos(combo_ids=combo_ids))

    def remove_combo(self, combo_id: str) -> "Selection":
        remaining = tuple(c for c in self.combo_ids if c != combo_id)
        if isinstance(self.combos, ManyCombos):
            combos = ManyCombos(combo_ids=remaining)
        elif remaining:
            combos = OneCombo(combo_id=remaining[0])
        else:
            combos = NoCombo()
        return self.model_copy(update={"combos": combos})

    def add_event(self, event_id: str, catalog: Catalog) -> "Selection":
        """Select an event directly; events already bundled in a chosen combo are ignored."""
        if event_id in self._absorbed_ids(catalog, self.combo_ids):
            return self
        event = catalog.event(event_id)
        if event is not None and event.category != "tech":
            return self.model_copy(update={"non_tech_event_ids": _with(self.non_tech_event_ids, event_id)})
        return self.model_copy(update={"tech_event_ids": _with(self.tech_event_ids, event_id)})

    def remove_event(self, event_id: str) -> "Selection":
        return self.model_copy(update={
            "tech_event_ids": _without(self.tech_event_ids, {event_id}),
            "non_tech_event_ids": _without(self.non_tech_event_ids, {event_id}),
        })

    def add_workshop(self, workshop_id: str, catalog: Catalog) -> "Selection":
        if workshop_id in self._absorbed_ids(catalog, self.combo_ids):
            return self
        return self.model_copy(update={"workshop_ids": _with(self.workshop_ids, workshop_id)})

    def remove_workshop(self, workshop_id: str) -> "Selection":
        return self.model_copy(update={"workshop_ids": _without(self.workshop_ids, {workshop_id})})


# ---------------------------------------------------------------------------
# Flow policies
# ---------------------------------------------------------------------------

def require_public_policy(selection: Selection) -> None:
    """Self-registration needs exactly one combo."""
    if not isinstance(selection.combos, OneCombo):
        raise SelectionError("Please select exactly one combo package.")


def require_coordinator_policy(selection: Selection, catalog: Catalog) -> None:
    """Coordinator registrations may hold several combos, billed separately.

    Two combos that bundle the same item would bill it twice, and a combo that
    excludes an event bundled by another combo contradicts itself, so both are
    rejected.
    """
    combo_ids = selection.combo_ids
    if len(set(combo_ids)) != len(combo_ids):
        raise SelectionError("The same combo is selected more than once.")

    combos = [catalog.combo(c) for c in combo_ids]
    combos = [c for c in combos if c is not None]
    for index, first in enumerate(combos):
        for second in combos[index + 1:]:
            shared = first.item_ids & second.item_ids
            if shared:
                raise SelectionError(
                    f"Combos '{first.name}' and '{second.name}' both include "
                    f"{len(shared)} of the same item(s)."
                )
            clash = (first.excluded_event_ids & set(second.item_ids_of("event"))) | (
                second.excluded_event_ids & set(first.item_ids_of("event"))
            )
            if clash:
                raise SelectionError(
                    f"Combos '{first.name}' and '{second.name}' cannot be combined."
                )
