import pytest
from sqlalchemy.exc import OperationalError

import catalog
import ledger
import models
import payments
from errors import InvalidTransitionError, SelectionError
from resolver import resolve
from selection import OneCombo, Selection


@pytest.fixture
def snapshot(db, fest):
    return catalog.load_catalog(db, active_only=False)


def _register(db, user, selection, snapshot, txn=None):
    rows = ledger.project(user.id, resolve(selection, snapshot), txn)
    ledger.record_new(db, user.id, rows)
    return rows


def _statuses(db, user_id):
    rows = ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user_id))
    return {(r.target_type, r.target_id): r.payment_status for r in rows}


def _combo_row(rows):
    return next(r for r in rows if r.target_type == "combo")


def test_approving_combo_approves_its_items(db, fest, snapshot, make_user):
    user = make_user()
    rows = _register(db, user, Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)

    change = payments.set_payment_status(db, _combo_row(rows).id, payments.APPROVED, snapshot)

    assert change.old_status == "pending"
    assert change.new_status == "approved"
    assert change.cascaded == 2
    assert change.cascade_failures == []
    assert _statuses(db, user.id) == {
        ("combo", fest.starter): "approved",
        ("event", fest.e1): "approved",
        ("workshop", fest.w1): "approved",
    }


def test_declining_combo_reverses_cascade(db, fest, snapshot, make_user):
    user = make_user()
    rows = _register(db, user, Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)
    combo_id = _combo_row(rows).id
    payments.set_payment_status(db, combo_id, payments.APPROVED, snapshot)

    change = payments.set_payment_status(db, combo_id, payments.DECLINED, snapshot)

    assert change.old_status == "approved"
    assert set(_statuses(db, user.id).values()) == {"declined"}


def test_cascade_only_touches_the_same_user(db, fest, snapshot, make_user):
    buyer, other = make_user(), make_user("Imran")
    rows = _register(db, buyer, Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)
    _register(db, other, Selection(tech_event_ids=(fest.e1,)), snapshot)

    payments.set_payment_status(db, _combo_row(rows).id, payments.APPROVED, snapshot)

    assert _statuses(db, other.id) == {("event", fest.e1): "pending"}


def test_cascade_failure_keeps_combo_status(db, fest, snapshot, make_user, monkeypatch):
    user = make_user()
    rows = _register(db, user, Selection(combos=OneCombo(combo_id=fest.starter)), snapshot)

    class LockedQuery:
        def filter(self, *args):
            return self

        def update(self, *args, **kwargs):
            raise OperationalError("UPDATE registrations", {}, Exception("database is locked"))

    real_query = db.query
    monkeypatch.setattr(db, "query", lambda *args: LockedQuery())

    change = payments.set_payment_status(db, _combo_row(rows).id, payments.APPROVED, snapshot)

    monkeypatch.setattr(db, "query", real_query)
    assert change.new_status == "approved"
    assert change.cascaded == 0
    assert [f.target_type for f in change.cascade_failures] == ["event", "workshop"]
    assert "database is locked" in change.cascade_failures[0].error
    statuses = _statuses(db, user.id)
    assert statuses[("combo", fest.starter)] == "approved"
    assert statuses[("event", fest.e1)] == "pending"


def test_direct_row_does_not_cascade(db, fest, snapshot, make_user):
    user = make_user()
    rows = _register(db, user, Selection(workshop_ids=(fest.w2,)), snapshot)

    change = payments.set_payment_status(db, rows[0].id, payments.DECLINED, snapshot)

    assert change.cascaded == 0
    assert _statuses(db, user.id) == {("workshop", fest.w2): "declined"}


def test_unknown_status_is_rejected(db, fest, snapshot, make_user):
    rows = _register(db, make_user(), Selection(workshop_ids=(fest.w2,)), snapshot)

    with pytest.raises(SelectionError):
        payments.set_payment_status(db, rows[0].id, "refunded", snapshot)
    with pytest.raises(SelectionError):
        payments.set_payment_status(db, rows[0].id, payments.NOT_REQUIRED, snapshot)


def test_same_status_is_a_no_op(db, fest, snapshot, make_user):
    rows = _register(db, make_user(), Selection(workshop_ids=(fest.w2,)), snapshot)

    change = payments.set_payment_status(db, rows[0].id, payments.PENDING, snapshot)

    assert change.old_status == change.new_status == "pending"


def test_not_required_rows_can_be_reviewed(db, fest, snapshot, make_user):
    user = make_user()
    row = models.Registration(user_id=user.id, target_type="event", target_id=fest.e2,
                              payment_status=payments.NOT_REQUIRED)
    db.add(row)
    db.commit()

    change = payments.set_payment_status(db, row.id, payments.APPROVED, snapshot)

    assert change.old_status == "not_required"
    assert change.new_status == "approved"


def test_transition_table():
    payments.check_transition("approved", "pending")
    payments.check_transition("declined", "approved")
    payments.check_transition("not_required", "declined")
    with pytest.raises(InvalidTransitionError):
        payments.check_transition("legacy", "approved")


def test_bulk_approve_for_user_skips_declined(db, fest, snapshot, make_user):
    user = make_user()
    rows = _register(db, user, Selection(workshop_ids=(fest.w2,), combos=OneCombo(combo_id=fest.starter)),
                     snapshot)
    payments.set_payment_status(db, rows[0].id, payments.DECLINED, snapshot)

    approved = payments.approve_pending(db, snapshot, user_id=user.id)

    assert approved == 3
    statuses = _statuses(db, user.id)
    assert statuses[("workshop", fest.w2)] == "declined"
    assert statuses[("combo", fest.starter)] == "approved"
    assert statuses[("event", fest.e1)] == "approved"
    assert payments.approve_pending(db, snapshot, user_id=user.id) == 0


def test_bulk_approve_for_target(db, fest, snapshot, make_user):
    first, second = make_user(), make_user("Tara")
    _register(db, first, Selection(combos=OneCombo(combo_id=fest.arts)), snapshot)
    _register(db, second, Selection(combos=OneCombo(combo_id=fest.arts)), snapshot)

    approved = payments.approve_pending(db, snapshot, target_type="combo", target_id=fest.arts)

    assert approved == 6
    assert set(_statuses(db, first.id).values()) == {"approved"}
    assert set(_statuses(db, second.id).values()) == {"approved"}


def test_bulk_approve_by_registration_ids(db, fest, snapshot, make_user):
    user = make_user()
    rows = _register(db, user, Selection(workshop_ids=(fest.w2,), non_tech_event_ids=(fest.e2,)), snapshot)

    approved = payments.approve_pending(db, snapshot, registration_ids=[rows[0].id])

    assert approved == 1
    assert sorted(_statuses(db, user.id).values()) == ["approved", "pending"]


def test_bulk_approve_needs_a_scope(db, snapshot):
    with pytest.raises(SelectionError):
        payments.approve_pending(db, snapshot)
