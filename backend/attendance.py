"""QR check-in: one attendance row per (user, target), recorded once.

Each scan runs these steps and stops at the first that fails:

1. parse the payload (a JSON object with ``user_id``/``userId``, or the bare id)
2. scanner cooldown since its last accepted scan
3. eligibility: approved direct registration, or an approved combo that
   bundles the target
4. lookup of an existing attendance row
5. insert, guarded by the unique constraint on (user, target type, target id)

The lookup in step 4 only saves a round trip. Two devices can scan the same
badge between steps 3 and 5; the constraint violation that follows is
reported exactly like step 4's rejection.
"""
import enum
import json
import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
import models

logger = logging.getLogger(__name__)


class RejectReason(str, enum.Enum):
    INVALID_PAYLOAD = "invalid_payload"
    COOLDOWN = "cooldown"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_ATTENDED = "already_attended"
    SCANNER_BUSY = "scanner_busy"
    ERROR = "error"


ALREADY_ATTENDED_MESSAGE = "User already attended this target"
NOT_ELIGIBLE_MESSAGE = "User not registered for selected target or payment not approved"


class Target(BaseModel):
    type: Literal["event", "workshop", "combo"]
    id: str
    name: str = ""


class Accepted(BaseModel):
    status: Literal["accepted"] = "accepted"
    user_id: str
    user_name: str
    attendance_id: int
    scan_time: datetime
    message: str = "Attendance recorded successfully"


class Rejected(BaseModel):
    status: Literal["rejected"] = "rejected"
    reason: RejectReason
    message: str


ScanOutcome = Union[Accepted, Rejected]


class InvalidPayload(ValueError):
    pass


def parse_qr_payload(raw) -> str:
    """Return the user id carried by a scanned badge."""
    text = (raw or "").strip() if isinstance(raw, str) else raw
    if not text:
        raise InvalidPayload("Invalid QR code format")
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return text
    if isinstance(data, dict):
        user_id = data.get("user_id") or data.get("userId")
        if not user_id:
            raise InvalidPayload("Invalid QR code format")
        return str(user_id)
    return text


# ---------------------------------------------------------------------------
# Attendance persistence
# ---------------------------------------------------------------------------

def find_attendance(db: Session, user_id: str, target_type: str, target_id: str) -> Optional[models.Attendance]:
    return (
        db.query(models.Attendance)
        .filter(
            models.Attendance.user_id == user_id,
            models.Attendance.target_type == target_type,
            models.Attendance.target_id == target_id,
        )
        .first()
    )


def insert_attendance(db: Session, row: models.Attendance) -> Optional[models.Attendance]:
    """Insert a check-in; returns None when the user already has one for the target."""
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if find_attendance(db, row.user_id, row.target_type, row.target_id) is not None:
            return None
        raise
    db.refresh(row)
    return row


def list_attendance(db: Session, target_type: Optional[str] = None,
                    target_id: Optional[str] = None) -> List[models.Attendance]:
    query = db.query(models.Attendance)
    if target_type:
        query = query.filter(models.Attendance.target_type == target_type)
    if target_id:
        query = query.filter(models.Attendance.target_id == target_id)
    return query.order_by(models.Attendance.scan_time.desc(), models.Attendance.id.desc()).all()


def is_eligible(db: Session, user_id: str, target: Target) -> bool:
    direct = (
        db.query(models.Registration.id)
        .filter(
            models.Registration.user_id == user_id,
            models.Registration.target_type == target.type,
            models.Registration.target_id == target.id,
            models.Registration.payment_status == "approved",
        )
        .first()
    )
    if direct is not None:
        return True

    if target.type == "combo":
        return False
    combo_ids = [
        combo_id for (combo_id,) in
        db.query(models.ComboItem.combo_id)
        .filter(
            models.ComboItem.target_type == target.type,
            models.ComboItem.target_id == target.id,
        )
        .distinct()
        .all()
    ]
    if not combo_ids:
        return False
    via_combo = (
        db.query(models.Registration.id)
        .filter(
            models.Registration.user_id == user_id,
            models.Registration.target_type == "combo",
            models.Registration.target_id.in_(combo_ids),
            models.Registration.payment_status == "approved",
        )
        .first()
    )
    return via_combo is not None


# ---------------------------------------------------------------------------
# Scanner sessions
# ---------------------------------------------------------------------------

class ScannerSession:
    """State of one staff device: the processing flag, cooldown and resume pause.

    The processing flag drops scans that arrive while one is being handled;
    it is not a queue.
    """

    def __init__(self, scanner_id: str, clock: Callable[[], float] = time.monotonic,
                 cooldown: float = None, resume_after: float = None):
        self.scanner_id = scanner_id
        self.clock = clock
        self.cooldown = config.SCAN_COOLDOWN_SECONDS if cooldown is None else cooldown
        self.resume_after = config.SCAN_RESUME_SECONDS if resume_after is None else resume_after
        self._processing = threading.Lock()
        self.last_accepted_at: Optional[float] = None
        self.paused_until: Optional[float] = None

    @property
    def processing(self) -> bool:
        return self._processing.locked()

    def try_begin(self) -> bool:
        return self._processing.acquire(blocking=False)

    def end(self) -> None:
        self._processing.release()

    def is_paused(self) -> bool:
        return self.paused_until is not None and self.clock() < self.paused_until

    def pause(self) -> None:
        self.paused_until = self.clock() + self.resume_after

    def cooldown_remaining(self) -> float:
        if self.last_accepted_at is None:
            return 0.0
        return max(0.0, self.cooldown - (self.clock() - self.last_accepted_at))

    def mark_accepted(self) -> None:
        self.last_accepted_at = self.clock()


class ScannerRegistry:
    """Scanner sessions keyed by device / staff id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, ScannerSession] = {}

    def get(self, scanner_id: str) -> ScannerSession:
        with self._lock:
            session = self._sessions.get(scanner_id)
            if session is None:
                session = ScannerSession(scanner_id, clock=self.clock)
                self._sessions[scanner_id] = session
            return session


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class AttendanceRecorder:
    def __init__(self, db: Session, notify: Optional[Callable] = None,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.db = db
        self.notify = notify
        self.now = now

    def record_scan(self, session: ScannerSession, raw_payload, target: Target) -> ScanOutcome:
        if not session.try_begin():
            return Rejected(reason=RejectReason.SCANNER_BUSY, message="Scan blocked, already processing")
        try:
            if session.is_paused():
                return Rejected(reason=RejectReason.SCANNER_BUSY, message="Scanner is resuming, try again")
            return self._process(session, raw_payload, target)
        except InvalidPayload as exc:
            session.pause()
            return Rejected(reason=RejectReason.INVALID_PAYLOAD, message=str(exc))
        except Exception as exc:
            # The scanner must keep running; the failure goes back to the operator.
            self.db.rollback()
            logger.exception("Error processing scan on %s", session.scanner_id)
            session.pause()
            return Rejected(reason=RejectReason.ERROR, message=f"Error processing scan: {exc}")
        finally:
            session.end()

    def _process(self, session: ScannerSession, raw_payload, target: Target) -> ScanOutcome:
        user_id = parse_qr_payload(raw_payload)

        remaining = session.cooldown_remaining()
        if remaining > 0:
            return Rejected(
                reason=RejectReason.COOLDOWN,
                message=f"Please wait {math.ceil(remaining)} seconds before scanning next attendance",
            )

        if not is_eligible(self.db, user_id, target):
            return Rejected(reason=RejectReason.NOT_ELIGIBLE, message=NOT_ELIGIBLE_MESSAGE)

        if find_attendance(self.db, user_id, target.type, target.id) is not None:
            return Rejected(reason=RejectReason.ALREADY_ATTENDED, message=ALREADY_ATTENDED_MESSAGE)

        scan_time = self.now()
        row = insert_attendance(self.db, models.Attendance(
            user_id=user_id,
            target_type=target.type,
            target_id=target.id,
            scanned_by=session.scanner_id,
            scan_time=scan_time,
        ))
        if row is None:
            return Rejected(reason=RejectReason.ALREADY_ATTENDED, message=ALREADY_ATTENDED_MESSAGE)

        session.mark_accepted()
        session.pause()
        user = self.db.get(models.User, user_id)
        logger.info("Attendance recorded: user %s at %s %s by %s",
                    user_id, target.type, target.id, session.scanner_id)
        self._notify(user, target, scan_time)
        return Accepted(
            user_id=user_id,
            user_name=user.name if user else "User",
            attendance_id=row.id,
            scan_time=scan_time,
        )

    def _notify(self, user, target: Target, scan_time: datetime) -> None:
        if self.notify is None or user is None:
            return
        try:
            self.notify(user, target.name or target.id, scan_time)
        except Exception as exc:
            logger.error("Attendance notification for %s failed: %s", user.id, exc)
