"""Registration ledger: projecting resolved selections into rows and storing them.

Each directly selected item becomes one row billed at its price. Each chosen
combo becomes a parent row billed at the combo price plus one zero-amount
shadow row per bundled item, so per-item participant lists include combo
buyers without charging them twice.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from catalog import Catalog
from errors import CapacityError, NotFoundError, ProjectionDataLossError, SelectionError
from resolver import EffectiveBillableSet

logger = logging.getLogger(__name__)


class RegistrationRow(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    target_type: str
    target_id: str
    transaction_id: Optional[str] = None
    amount_paid: Decimal = Decimal("0")
    payment_status: str = "pending"
    parent_registration_id: Optional[str] = None

    model_config = {"frozen": True}


class RegistrationFilter(BaseModel):
    user_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    payment_status: Optional[str] = None
    transaction_id: Optional[str] = None


def project(user_id: str, effective: EffectiveBillableSet,
            transaction_id: Optional[str] = None) -> List[RegistrationRow]:
    rows = []
    for line in effective.lines:
        rows.append(RegistrationRow(
            user_id=user_id,
            target_type=line.target_type,
            target_id=line.target_id,
            transaction_id=transaction_id,
            amount_paid=line.price,
        ))

    for combo in effective.combos:
        parent = RegistrationRow(
            user_id=user_id,
            target_type="combo",
            target_id=combo.id,
            transaction_id=transaction_id,
            amount_paid=combo.price,
        )
        rows.append(parent)
        for item in combo.items:
            rows.append(RegistrationRow(
                user_id=user_id,
                target_type=item.target_type,
                target_id=item.target_id,
                transaction_id=transaction_id,
                amount_paid=Decimal("0"),
                parent_registration_id=parent.id,
            ))
    return rows


# ---------------------------------------------------------------------------
# Registration persistence
# ---------------------------------------------------------------------------

def insert_registrations(db: Session, rows: Iterable[RegistrationRow]) -> List[models.Registration]:
    created = [models.Registration(**row.model_dump()) for row in rows]
    db.add_all(created)
    db.commit()
    return created


def delete_registrations_for_user(db: Session, user_id: str) -> int:
    deleted = (
        db.query(models.Registration)
        .filter(models.Registration.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def get_registration(db: Session, registration_id: str) -> models.Registration:
    registration = db.get(models.Registration, registration_id)
    if registration is None:
        raise NotFoundError("Registration not found.")
    return registration


def update_payment_status(db: Session, registration_id: str, status: str) -> models.Registration:
    registration = get_registration(db, registration_id)
    registration.payment_status = status
    registration.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(registration)
    return registration


def list_registrations(db: Session, filter: Optional[RegistrationFilter] = None) -> List[models.Registration]:
    query = db.query(models.Registration)
    if filter is not None:
        for field, value in filter.model_dump(exclude_none=True).items():
            query = query.filter(getattr(models.Registration, field) == value)
    return query.order_by(models.Registration.created_at, models.Registration.id).all()


# ---------------------------------------------------------------------------
# Submission checks
# ---------------------------------------------------------------------------

def _registered_count(db: Session, target_type: str, target_id: str,
                      exclude_user_id: Optional[str]) -> int:
    query = db.query(func.count(models.Registration.id)).filter(
        models.Registration.target_type == target_type,
        models.Registration.target_id == target_id,
    )
    if exclude_user_id:
        query = query.filter(models.Registration.user_id != exclude_user_id)
    return query.scalar() or 0


def check_capacity(db: Session, rows: List[RegistrationRow], catalog: Catalog,
                   exclude_user_id: Optional[str] = None) -> None:
    """Raise CapacityError if any projected row would overfill its target."""
    for row in rows:
        item = catalog.item(row.target_type, row.target_id)
        if item is None or item.capacity is None:
            continue
        taken = _registered_count(db, row.target_type, row.target_id, exclude_user_id)
        if taken >= item.capacity:
            raise CapacityError(f"{item.name} is full ({item.capacity} places).")


def check_transaction_id(db: Session, transaction_id: Optional[str], user_id: Optional[str] = None) -> None:
    """A transaction id may only be used by one participant."""
    if not transaction_id:
        return
    query = db.query(models.Registration.id).filter(models.Registration.transaction_id == transaction_id)
    if user_id:
        query = query.filter(models.Registration.user_id != user_id)
    if query.first() is not None:
        raise SelectionError("This transaction ID is already used.")


def check_rows(rows: List[RegistrationRow]) -> None:
    """Reject rows the registrations table would refuse, before anything is deleted."""
    for row in rows:
        if row.amount_paid < 0:
            raise SelectionError(
                f"Amount for {row.target_type} {row.target_id} cannot be negative (₹{row.amount_paid:.2f})."
            )


def check_no_conflicts(effective: EffectiveBillableSet, catalog: Catalog) -> None:
    if effective.conflicts:
        names = ", ".join(catalog.display_name("event", e) for e in effective.conflicts)
        raise SelectionError(f"The selected combo excludes: {names}.")


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def record_new(db: Session, user_id: str, rows: List[RegistrationRow]) -> List[models.Registration]:
    """Insert the ledger for a participant who has none yet."""
    check_rows(rows)
    created = insert_registrations(db, rows)
    logger.info("Created %d registration row(s) for user %s", len(created), user_id)
    return created


def replace(db: Session, user_id: str, rows: List[RegistrationRow]) -> List[models.Registration]:
    """Delete every row for the user, then insert ``rows``.

    The delete is committed before the insert starts; if the insert fails the
    participant is left with no registrations and ProjectionDataLossError is
    raised.
    """
    check_rows(rows)
    deleted = delete_registrations_for_user(db, user_id)
    try:
        created = insert_registrations(db, rows) if rows else []
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Replacing registrations for user %s failed after deleting %d row(s): %s",
            user_id, deleted, exc,
        )
        raise ProjectionDataLossError(user_id, exc) from exc
    logger.info("Replaced %d row(s) with %d for user %s", deleted, len(created), user_id)
    return created
