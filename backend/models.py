import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


TARGET_TYPES    = ("event", "workshop", "combo")
PAYMENT_STATUSES = ("pending", "approved", "declined", "not_required")


# ── Festival settings (key-value store) ──────────────────────────────────────
class Setting(Base):
    """
    Stores configurable festival / payee settings as key-value pairs.
    Defaults live in config.py; only overrides live here.
    """
    __tablename__ = "settings"
    key   = Column(String(60),  primary_key=True)
    value = Column(Text,        nullable=False)


# ── Catalog ───────────────────────────────────────────────────────────────────
class Event(Base):
    __tablename__ = "events"

    id               = Column(String(36),  primary_key=True, default=new_id)
    name             = Column(String(200), nullable=False)
    # 'tech' | 'non_tech' | 'food'
    category         = Column(String(20),  nullable=False, default="tech")
    price            = Column(Numeric(10, 2), nullable=True)
    max_participants = Column(Integer,     nullable=True)
    is_active        = Column(Boolean,     default=True, nullable=False)
    created_at       = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Workshop(Base):
    __tablename__ = "workshops"

    id         = Column(String(36),  primary_key=True, default=new_id)
    title      = Column(String(200), nullable=False)
    fee        = Column(Numeric(10, 2), nullable=True)
    capacity   = Column(Integer,     nullable=True)
    is_active  = Column(Boolean,     default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Combo(Base):
    __tablename__ = "combos"

    id         = Column(String(36),  primary_key=True, default=new_id)
    name       = Column(String(200), nullable=False)
    price      = Column(Numeric(10, 2), nullable=True)
    capacity   = Column(Integer,     nullable=True)
    is_active  = Column(Boolean,     default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    items = relationship(
        "ComboItem", order_by="ComboItem.position",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    exclusions = relationship(
        "ComboExclusion", cascade="all, delete-orphan", passive_deletes=True,
    )


class ComboItem(Base):
    __tablename__ = "combo_items"

    id          = Column(Integer,    primary_key=True, autoincrement=True)
    combo_id    = Column(String(36), ForeignKey("combos.id", ondelete="CASCADE"), nullable=False, index=True)
    # 'event' | 'workshop'
    target_type = Column(String(20), nullable=False)
    target_id   = Column(String(36), nullable=False, index=True)
    position    = Column(Integer,    default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("combo_id", "target_type", "target_id", name="uq_combo_item"),
        CheckConstraint("target_type IN ('event', 'workshop')", name="ck_combo_item_type"),
    )


class ComboExclusion(Base):
    """An event that cannot be selected alongside the combo."""
    __tablename__ = "combo_exclusions"

    id        = Column(Integer,    primary_key=True, autoincrement=True)
    combo_id  = Column(String(36), ForeignKey("combos.id", ondelete="CASCADE"), nullable=False, index=True)
    target_id = Column(String(36), nullable=False)

    __table_args__ = (
        UniqueConstraint("combo_id", "target_id", name="uq_combo_exclusion"),
    )


# ── Participants and ledger ──────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id                = Column(String(36),  primary_key=True, default=new_id)
    name              = Column(String(100), nullable=False)
    email             = Column(String(255), nullable=False, unique=True, index=True)
    phone             = Column(String(20),  nullable=False)
    enrollment_number = Column(String(50),  nullable=True)
    college           = Column(String(200), nullable=True)
    # 'participant' | 'coordinator' | 'scanner'
    role              = Column(String(20),  default="participant", nullable=False)
    created_at        = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Registration(Base):
    __tablename__ = "registrations"

    id                     = Column(String(36), primary_key=True, default=new_id)
    user_id                = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    target_type            = Column(String(20), nullable=False)
    target_id              = Column(String(36), nullable=False, index=True)
    transaction_id         = Column(String(100), nullable=True, index=True)
    amount_paid            = Column(Numeric(10, 2), default=0, nullable=False)
    payment_status         = Column(String(20), default="pending", nullable=False)
    # Set on combo shadow rows, points at the combo row of the same submission
    parent_registration_id = Column(String(36), nullable=True)
    created_at             = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at             = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_paid >= 0", name="ck_registration_amount"),
        CheckConstraint("target_type IN ('event', 'workshop', 'combo')", name="ck_registration_type"),
        CheckConstraint(
            "payment_status IN ('pending', 'approved', 'declined', 'not_required')",
            name="ck_registration_status",
        ),
    )


class Attendance(Base):
    __tablename__ = "attendance"

    id          = Column(Integer,    primary_key=True, autoincrement=True)
    user_id     = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    target_type = Column(String(20), nullable=False)
    target_id   = Column(String(36), nullable=False)
    scanned_by  = Column(String(100), nullable=True)
    scan_time   = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # The constraint, not the pre-insert lookup, is what guarantees one check-in
    __table_args__ = (
        UniqueConstraint("user_id", "target_type", "target_id", name="uq_attendance_user_target"),
    )


# ── Audit log ────────────────────────────────────────────────────────────────
class AuditLog(Base):
    """Records every significant staff action."""
    __tablename__ = "audit_logs"

    id        = Column(Integer,  primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    role      = Column(String(20),  nullable=False)   # coordinator | finance | scanner
    action    = Column(String(50),  nullable=False)   # set_status | bulk_approve | replace_registrations | checkin | ...
    detail    = Column(Text,        nullable=False)
