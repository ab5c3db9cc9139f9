from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

import catalog
import ledger
import models
from errors import CapacityError, CatalogConfigError, ProjectionDataLossError, SelectionError
from resolver import resolve
from schemas import ComboItemIn
from selection import ManyCombos, OneCombo, Selection


def _snapshot(db):
    return catalog.load_catalog(db)


def test_project_combo_creates_parent_and_shadow_rows(starter_catalog):
    effective = resolve(
        Selection(workshop_ids=("W2",), combos=OneCombo(combo_id="C1")), starter_catalog,
    )

    rows = ledger.project("u1", effective, "TXN-1")

    summary = [(r.target_type, r.target_id, r.amount_paid) for r in rows]
    assert summary == [
        ("workshop", "W2", Decimal("120")),
        ("combo", "C1", Decimal("200")),
        ("event", "E1", Decimal("0")),
        ("workshop", "W1", Decimal("0")),
    ]
    parent = rows[1]
    assert [r.parent_registration_id for r in rows[2:]] == [parent.id, parent.id]
    assert all(r.payment_status == "pending" for r in rows)
    assert all(r.transaction_id == "TXN-1" for r in rows)
    # Only the combo row and the direct workshop are billed
    assert sum(r.amount_paid for r in rows) == Decimal("320")


def test_project_empty_selection(starter_catalog):
    assert ledger.project("u1", resolve(Selection(), starter_catalog)) == []


def test_record_new_persists_rows(db, fest, make_user):
    user = make_user()
    effective = resolve(Selection(combos=OneCombo(combo_id=fest.starter)), _snapshot(db))

    ledger.record_new(db, user.id, ledger.project(user.id, effective, "TXN-9"))

    rows = ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user.id))
    assert {(r.target_type, r.target_id) for r in rows} == {
        ("combo", fest.starter), ("event", fest.e1), ("workshop", fest.w1),
    }


def test_participants_of_item_include_combo_buyers(db, fest, make_user):
    buyer = make_user("Ravi")
    effective = resolve(Selection(combos=OneCombo(combo_id=fest.starter)), _snapshot(db))
    ledger.record_new(db, buyer.id, ledger.project(buyer.id, effective))

    rows = ledger.list_registrations(
        db, ledger.RegistrationFilter(target_type="event", target_id=fest.e1),
    )

    assert [r.user_id for r in rows] == [buyer.id]
    assert rows[0].amount_paid == Decimal("0")


def test_replace_swaps_whole_ledger(db, fest, make_user):
    user = make_user()
    other = make_user("Meera")
    snapshot = _snapshot(db)
    ledger.record_new(db, user.id, ledger.project(
        user.id, resolve(Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)))
    ledger.record_new(db, other.id, ledger.project(
        other.id, resolve(Selection(tech_event_ids=(fest.e3,)), snapshot)))

    ledger.replace(db, user.id, ledger.project(
        user.id, resolve(Selection(workshop_ids=(fest.w2,)), snapshot)))

    mine = ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user.id))
    assert [(r.target_type, r.target_id) for r in mine] == [("workshop", fest.w2)]
    assert len(ledger.list_registrations(db, ledger.RegistrationFilter(user_id=other.id))) == 1


def test_replace_reports_data_loss_when_insert_fails(db, fest, make_user, monkeypatch):
    user = make_user()
    snapshot = _snapshot(db)
    ledger.record_new(db, user.id, ledger.project(
        user.id, resolve(Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)))

    def broken_insert(session, rows):
        raise OperationalError("INSERT INTO registrations", {}, Exception("connection lost"))

    monkeypatch.setattr(ledger, "insert_registrations", broken_insert)

    with pytest.raises(ProjectionDataLossError) as excinfo:
        ledger.replace(db, user.id, ledger.project(
            user.id, resolve(Selection(workshop_ids=(fest.w2,)), snapshot)))

    assert excinfo.value.status_code == 500
    assert excinfo.value.user_id == user.id
    assert ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user.id)) == []


def test_capacity_blocks_full_event(db, make_user):
    talk = catalog.create_event(db, "Keynote", "non_tech", Decimal("50"), capacity=1)
    first = make_user()
    second = make_user("Kiran")
    snapshot = _snapshot(db)
    rows = ledger.project(first.id, resolve(Selection(non_tech_event_ids=(talk.id,)), snapshot))
    ledger.record_new(db, first.id, rows)

    with pytest.raises(CapacityError):
        ledger.check_capacity(
            db, ledger.project(second.id, resolve(Selection(non_tech_event_ids=(talk.id,)), snapshot)),
            snapshot,
        )

    # Re-projecting the same participant does not count their own row
    ledger.check_capacity(db, rows, snapshot, exclude_user_id=first.id)


def test_combo_capacity(db, fest, make_user):
    small = catalog.create_combo(db, "Tiny Pack", Decimal("10"),
                                 [ComboItemIn(target_type="event", target_id=fest.e2)], capacity=1)
    snapshot = _snapshot(db)
    first, second = make_user(), make_user("Dev")
    effective = resolve(Selection(combos=OneCombo(combo_id=small.id)), snapshot)
    ledger.record_new(db, first.id, ledger.project(first.id, effective))

    with pytest.raises(CapacityError):
        ledger.check_capacity(db, ledger.project(second.id, effective), snapshot)


def test_transaction_id_belongs_to_one_participant(db, fest, make_user):
    owner, other = make_user(), make_user("Nila")
    ledger.record_new(db, owner.id, ledger.project(
        owner.id, resolve(Selection(workshop_ids=(fest.w2,)), _snapshot(db)), "UTR123"))

    ledger.check_transaction_id(db, "UTR123", owner.id)
    ledger.check_transaction_id(db, None)
    with pytest.raises(SelectionError):
        ledger.check_transaction_id(db, "UTR123", other.id)


def test_conflicting_selection_is_rejected(db, fest):
    snapshot = _snapshot(db)
    effective = resolve(Selection(tech_event_ids=(fest.e3,), combos=OneCombo(combo_id=fest.starter)), snapshot)

    with pytest.raises(SelectionError, match="Code Golf"):
        ledger.check_no_conflicts(effective, snapshot)


def test_multiple_combos_project_independently(db, fest, make_user):
    user = make_user()
    effective = resolve(Selection(combos=ManyCombos(combo_ids=(fest.starter, fest.arts))), _snapshot(db))

    ledger.record_new(db, user.id, ledger.project(user.id, effective))

    rows = db.query(models.Registration).filter(models.Registration.user_id == user.id).all()
    assert len(rows) == 6
    assert sum(r.amount_paid for r in rows) == Decimal("350")


def test_negative_combo_price_is_rejected_at_authoring(db, fest):
    with pytest.raises(CatalogConfigError):
        catalog.create_combo(db, "Refund Pack", Decimal("-50"),
                             [ComboItemIn(target_type="event", target_id=fest.e2)])
    with pytest.raises(CatalogConfigError):
        catalog.create_workshop(db, "Pottery", Decimal("40"), capacity=-1)


def test_replace_rejects_negative_rows_before_deleting(db, fest, make_user):
    user = make_user()
    ledger.record_new(db, user.id, ledger.project(
        user.id, resolve(Selection(combos=OneCombo(combo_id=fest.starter)), _snapshot(db))))
    # A combo row that predates the authoring checks
    legacy = models.Combo(name="Legacy Refund", price=Decimal("-50"))
    legacy.items = [models.ComboItem(target_type="event", target_id=fest.e2, position=0)]
    db.add(legacy)
    db.commit()

    rows = ledger.project(user.id, resolve(
        Selection(combos=ManyCombos(combo_ids=(legacy.id,))), _snapshot(db)))

    with pytest.raises(SelectionError, match="cannot be negative"):
        ledger.replace(db, user.id, rows)

    kept = ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user.id))
    assert {(r.target_type, r.target_id) for r in kept} == {
        ("combo", fest.starter), ("event", fest.e1), ("workshop", fest.w1),
    }
