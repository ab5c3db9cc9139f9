"""Payment review: per-row status transitions, combo cascade and bulk approval.

Statuses are freely reversible between pending, approved and declined.
``not_required`` rows may be moved into any of those but staff never set it.

Changing a combo row also changes the same user's rows for the combo's
items. That cascade is best effort: a failure is logged and reported back,
the combo row keeps its new status.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import ledger
import models
from catalog import Catalog
from errors import InvalidTransitionError, SelectionError

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
DECLINED = "declined"
NOT_REQUIRED = "not_required"

STAFF_STATUSES = (PENDING, APPROVED, DECLINED)

TRANSITIONS = {
    PENDING:      {APPROVED, DECLINED},
    APPROVED:     {PENDING, DECLINED},
    DECLINED:     {PENDING, APPROVED},
    NOT_REQUIRED: {PENDING, APPROVED, DECLINED},
}


class CascadeFailure(BaseModel):
    target_type: str
    error: str


class StatusChange(BaseModel):
    registration_id: str
    user_id: str
    old_status: str
    new_status: str
    cascaded: int = 0
    cascade_failures: List[CascadeFailure] = []


def check_transition(current: str, new: str) -> None:
    if new not in STAFF_STATUSES:
        raise SelectionError(f"'{new}' is not a valid payment status.")
    if current == new:
        return
    if new not in TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot change payment status from {current} to {new}.")


def _cascade(db: Session, registration: models.Registration, status: str,
             catalog: Catalog) -> StatusChange:
    change = StatusChange(
        registration_id=registration.id, user_id=registration.user_id,
        old_status="", new_status=status,
    )
    combo = catalog.combo(registration.target_id)
    if combo is None:
        logger.warning("Combo %s not in catalog, nothing to cascade", registration.target_id)
        return change

    now = datetime.now(timezone.utc)
    for target_type in ("event", "workshop"):
        item_ids = combo.item_ids_of(target_type)
        if not item_ids:
            continue
        try:
            updated = (
                db.query(models.Registration)
                .filter(
                    models.Registration.user_id == registration.user_id,
                    models.Registration.target_type == target_type,
                    models.Registration.target_id.in_(item_ids),
                    models.Registration.id != registration.id,
                    models.Registration.payment_status != status,
                )
                .update(
                    {"payment_status": status, "updated_at": now},
                    synchronize_session=False,
                )
            )
            db.commit()
            change.cascaded += updated
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(
                "Could not update %s registrations for combo %s (user %s): %s",
                target_type, combo.id, registration.user_id, exc,
            )
            change.cascade_failures.append(CascadeFailure(target_type=target_type, error=str(exc)))
    return change


def set_payment_status(db: Session, registration_id: str, status: str,
                       catalog: Catalog) -> StatusChange:
    """Transition one registration and, for combo rows, its items for that user.

    ``catalog`` must include inactive combos so retired packages still cascade.
    """
    registration = ledger.get_registration(db, registration_id)
    old_status = registration.payment_status
    check_transition(old_status, status)

    registration = ledger.update_payment_status(db, registration_id, status)
    logger.info("Registration %s: %s -> %s", registration_id, old_status, status)

    if registration.target_type == "combo":
        change = _cascade(db, registration, status, catalog)
    else:
        change = StatusChange(registration_id=registration.id, user_id=registration.user_id,
                              old_status="", new_status=status)
    change.old_status = old_status
    return change


def approve_pending(db: Session, catalog: Catalog, user_id: Optional[str] = None,
                    target_type: Optional[str] = None, target_id: Optional[str] = None,
                    registration_ids: Optional[List[str]] = None) -> int:
    """Approve every pending row matching the given scope; other rows are left alone.

    Returns the number of rows approved, including combo cascades.
    """
    if not (user_id or target_id or registration_ids):
        raise SelectionError("Bulk approval needs a user, a target or a list of registrations.")

    query = db.query(models.Registration).filter(models.Registration.payment_status == PENDING)
    if user_id:
        query = query.filter(models.Registration.user_id == user_id)
    if target_type:
        query = query.filter(models.Registration.target_type == target_type)
    if target_id:
        query = query.filter(models.Registration.target_id == target_id)
    if registration_ids:
        query = query.filter(models.Registration.id.in_(registration_ids))

    pending = query.all()
    if not pending:
        logger.info("No pending payments to approve")
        return 0

    now = datetime.now(timezone.utc)
    for registration in pending:
        registration.payment_status = APPROVED
        registration.updated_at = now
    db.commit()

    approved = len(pending)
    for registration in pending:
        if registration.target_type == "combo":
            approved += _cascade(db, registration, APPROVED, catalog).cascaded
    logger.info("Bulk approved %d registration(s)", approved)
    return approved
