import logging
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import attendance
import audit
import catalog
import config
import ledger
import models
import notifications
import payments
import pricing
import schemas
from catalog import catalog_cache
from database import get_db, init_db
from errors import NotFoundError, RegistrationError, SelectionError
from resolver import disable_reasons, resolve
from selection import require_coordinator_policy, require_public_policy

# Create tables on startup
init_db()

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

# One session per scanning device, kept for the lifetime of the process
scanners = attendance.ScannerRegistry()


def get_all_settings(db: Session) -> dict:
    """Return merged dict: defaults overridden by DB values."""
    rows = db.query(models.Setting).all()
    result = dict(config.SETTING_DEFAULTS)
    for row in rows:
        result[row.key] = row.value
    return result


# ── FastAPI app ───────────────────────────────────────────────────────────────

app = FastAPI(title="Fest Registration API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RegistrationError)
def registration_error_handler(request: Request, exc: RegistrationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "A database error occurred, please try again."})


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def verify_coordinator(x_admin_key: str = Header(..., alias="X-Admin-Key")) -> str:
    """Full access: catalog authoring, registration edits, settings."""
    if x_admin_key != config.COORDINATOR_KEY:
        raise HTTPException(status_code=401, detail="Invalid coordinator key")
    return "coordinator"

def verify_reviewer(x_admin_key: str = Header(..., alias="X-Admin-Key")) -> str:
    """Payment review: coordinator or finance key."""
    if x_admin_key == config.COORDINATOR_KEY:
        return "coordinator"
    if x_admin_key == config.FINANCE_KEY:
        return "finance"
    raise HTTPException(status_code=401, detail="Invalid key")

def verify_any_admin(x_admin_key: str = Header(..., alias="X-Admin-Key")) -> str:
    """Read-only admin access: accepts coordinator, finance and scanner keys."""
    roles = {
        config.COORDINATOR_KEY: "coordinator",
        config.FINANCE_KEY: "finance",
        config.SCANNER_KEY: "scanner",
    }
    if x_admin_key not in roles:
        raise HTTPException(status_code=401, detail="Invalid key")
    return roles[x_admin_key]

def verify_scanner(x_admin_key: str = Header(..., alias="X-Admin-Key")) -> str:
    """Check-in: scanner key, or the coordinator working the gate."""
    if x_admin_key == config.SCANNER_KEY:
        return "scanner"
    if x_admin_key == config.COORDINATOR_KEY:
        return "coordinator"
    raise HTTPException(status_code=401, detail="Invalid scanner key")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _combo_response(combo: catalog.CatalogCombo) -> schemas.ComboResponse:
    return schemas.ComboResponse(
        id=combo.id, name=combo.name, price=combo.price, capacity=combo.capacity,
        is_active=combo.is_active,
        items=[schemas.ComboItemResponse(target_type=i.target_type, target_id=i.target_id) for i in combo.items],
        excluded_event_ids=sorted(combo.excluded_event_ids),
    )


def _require_known_combos(selection, snapshot: catalog.Catalog) -> None:
    for combo_id in selection.combo_ids:
        if snapshot.combo(combo_id) is None:
            raise SelectionError("Selected combo is no longer available.")


def _payment_note(settings: dict) -> str:
    return f"{settings['festival_name']} registration"


# ---------------------------------------------------------------------------
# Public routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/admin/ping")
def admin_ping(role: str = Depends(verify_any_admin)):
    """Key verification; returns role so the frontend knows what access level was granted."""
    return {"ok": True, "role": role}


@app.get("/api/settings")
def get_settings(db: Session = Depends(get_db)):
    """Public: festival name and payee details."""
    return get_all_settings(db)


@app.put("/api/admin/settings")
def update_settings(payload: dict, db: Session = Depends(get_db),
                    role: str = Depends(verify_coordinator)):
    """Save updated settings (coordinator key required)."""
    allowed_keys = set(config.SETTING_DEFAULTS.keys())
    for key, value in payload.items():
        if key not in allowed_keys:
            continue
        row = db.query(models.Setting).filter(models.Setting.key == key).first()
        if row:
            row.value = str(value)
        else:
            db.add(models.Setting(key=key, value=str(value)))
    audit.record(db, role, "update_settings", ", ".join(sorted(k for k in payload if k in allowed_keys)))
    return get_all_settings(db)


@app.get("/api/catalog", response_model=schemas.CatalogResponse)
def get_catalog(db: Session = Depends(get_db)):
    """Active events, workshops and combos (with items and exclusions)."""
    snapshot = catalog_cache.get(db)
    return schemas.CatalogResponse(
        events=[schemas.EventResponse(**e.model_dump()) for e in snapshot.events.values()],
        workshops=[schemas.WorkshopResponse(**w.model_dump()) for w in snapshot.workshops.values()],
        combos=[_combo_response(c) for c in snapshot.combos.values()],
    )


@app.post("/api/selection/quote", response_model=schemas.QuoteResponse)
def quote_selection(selection_in: schemas.SelectionIn, db: Session = Depends(get_db)):
    """Price a selection against the current catalog; nothing is stored."""
    snapshot = catalog_cache.get(db, fresh=True)
    selection = selection_in.to_public()
    effective = resolve(selection, snapshot)
    total = pricing.price(effective)
    settings = get_all_settings(db)
    return schemas.QuoteResponse(
        lines=[schemas.BillableLineResponse(**line.model_dump()) for line in effective.lines],
        combos=[_combo_response(c) for c in effective.combos],
        total=total,
        conflicts=list(effective.conflicts),
        disabled_events=disable_reasons(selection, snapshot),
        payment_uri=pricing.payment_uri(
            total, settings["payee_id"], settings["currency"], _payment_note(settings),
            payee_name=settings["payee_name"],
        ),
    )


@app.post("/api/register", response_model=schemas.RegistrationResult, status_code=201)
def register_participant(payload: schemas.RegistrationCreate, db: Session = Depends(get_db)):
    # Always price against the latest catalog, never a cached one
    snapshot = catalog_cache.get(db, fresh=True)

    selection = payload.selection.to_public()
    require_public_policy(selection)
    _require_known_combos(selection, snapshot)

    effective = resolve(selection, snapshot)
    ledger.check_no_conflicts(effective, snapshot)
    total = pricing.check_declared_amount(payload.amount_paid, effective)

    participant = payload.participant
    if db.query(models.User.id).filter(models.User.email == participant.email).first():
        raise HTTPException(status_code=409, detail="This email is already registered")
    ledger.check_transaction_id(db, payload.transaction_id)

    user = models.User(
        id=models.new_id(),
        name=participant.name,
        email=participant.email,
        phone=participant.phone,
        enrollment_number=participant.enrollment_number,
        college=participant.college,
    )
    rows = ledger.project(user.id, effective, payload.transaction_id)
    ledger.check_capacity(db, rows, snapshot)

    # User and ledger rows go out in the same commit; the user row is flushed first
    db.add(user)
    db.flush()
    created = ledger.record_new(db, user.id, rows)
    db.refresh(user)
    return schemas.RegistrationResult(user=user, total=total, registrations=created)


@app.get("/api/users/{user_id}/registrations", response_model=schemas.UserRegistrationsResponse)
def get_user_registrations(user_id: str, db: Session = Depends(get_db)):
    """A participant's ledger with names and attended flags."""
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    attended = {
        (a.target_type, a.target_id)
        for a in db.query(models.Attendance).filter(models.Attendance.user_id == user_id)
    }
    rows = ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user_id))
    entries = [
        schemas.UserRegistrationEntry(
            **schemas.RegistrationResponse.model_validate(r).model_dump(),
            target_name=snapshot.display_name(r.target_type, r.target_id),
            attended=(r.target_type, r.target_id) in attended,
        )
        for r in rows
    ]
    return schemas.UserRegistrationsResponse(user=user, registrations=entries)


# ---------------------------------------------------------------------------
# Catalog authoring  (coordinator key)
# ---------------------------------------------------------------------------

@app.post("/api/admin/events", response_model=schemas.EventResponse, status_code=201)
def create_event(payload: schemas.EventCreate, db: Session = Depends(get_db),
                 role: str = Depends(verify_coordinator)):
    row = catalog.create_event(db, payload.name, payload.category, payload.price,
                               payload.capacity, payload.is_active)
    audit.record(db, role, "create_event", f"{row.id} {row.name}")
    return schemas.EventResponse(**catalog.event_snapshot(row).model_dump())


@app.post("/api/admin/workshops", response_model=schemas.WorkshopResponse, status_code=201)
def create_workshop(payload: schemas.WorkshopCreate, db: Session = Depends(get_db),
                    role: str = Depends(verify_coordinator)):
    row = catalog.create_workshop(db, payload.name, payload.price, payload.capacity, payload.is_active)
    audit.record(db, role, "create_workshop", f"{row.id} {row.title}")
    return schemas.WorkshopResponse(**catalog.workshop_snapshot(row).model_dump())


@app.post("/api/admin/combos", response_model=schemas.ComboResponse, status_code=201)
def create_combo(payload: schemas.ComboCreate, db: Session = Depends(get_db),
                 role: str = Depends(verify_coordinator)):
    row = catalog.create_combo(
        db, payload.name, payload.price, payload.items,
        excluded_event_ids=payload.excluded_event_ids,
        capacity=payload.capacity, is_active=payload.is_active,
    )
    audit.record(db, role, "create_combo", f"{row.id} {row.name}")
    return _combo_response(catalog.combo_snapshot(db.get(models.Combo, row.id)))


@app.patch("/api/admin/{kind}/{item_id}/active")
def set_catalog_active(kind: str, item_id: str, update: schemas.ActiveUpdate,
                       db: Session = Depends(get_db), role: str = Depends(verify_coordinator)):
    if kind not in ("events", "workshops", "combos"):
        raise HTTPException(status_code=404, detail="Not found.")
    row = catalog.set_active(db, kind, item_id, update.is_active)
    audit.record(db, role, "set_active", f"{kind} {item_id} -> {update.is_active}")
    return {"id": row.id, "is_active": row.is_active}


# ---------------------------------------------------------------------------
# Registration review  (X-Admin-Key)
# ---------------------------------------------------------------------------

@app.put(
    "/api/admin/users/{user_id}/registrations",
    response_model=schemas.RegistrationResult,
)
def replace_user_registrations(
    user_id: str,
    payload: schemas.RegistrationReplace,
    db: Session = Depends(get_db),
    role: str = Depends(verify_coordinator),
):
    """Coordinator edit: the submitted selection replaces the user's whole ledger."""
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")

    snapshot = catalog_cache.get(db, fresh=True)
    selection = payload.selection.to_coordinator()
    require_coordinator_policy(selection, snapshot)
    _require_known_combos(selection, snapshot)

    effective = resolve(selection, snapshot)
    ledger.check_no_conflicts(effective, snapshot)
    total = pricing.check_declared_amount(payload.amount_paid, effective)
    ledger.check_transaction_id(db, payload.transaction_id, user_id)

    rows = ledger.project(user_id, effective, payload.transaction_id)
    ledger.check_capacity(db, rows, snapshot, exclude_user_id=user_id)

    created = ledger.replace(db, user_id, rows)
    audit.record(db, role, "replace_registrations", f"user {user_id}: {len(created)} row(s)")
    db.refresh(user)
    return schemas.RegistrationResult(
        user=user, total=total,
        registrations=[schemas.RegistrationResponse.model_validate(r) for r in
                       ledger.list_registrations(db, ledger.RegistrationFilter(user_id=user_id))],
    )


@app.get(
    "/api/admin/registrations",
    response_model=List[schemas.RegistrationResponse],
    dependencies=[Depends(verify_any_admin)],
)
def get_registrations(
    user_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    payment_status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return ledger.list_registrations(db, ledger.RegistrationFilter(
        user_id=user_id, target_type=target_type,
        target_id=target_id, payment_status=payment_status,
    ))


@app.get(
    "/api/admin/participants/{target_type}/{target_id}",
    response_model=List[schemas.ParticipantEntry],
    dependencies=[Depends(verify_any_admin)],
)
def get_participants(target_type: str, target_id: str, db: Session = Depends(get_db)):
    """Everyone registered for a target, combo buyers included via their shadow rows."""
    rows = (
        db.query(models.Registration, models.User)
        .join(models.User, models.User.id == models.Registration.user_id)
        .filter(
            models.Registration.target_type == target_type,
            models.Registration.target_id == target_id,
        )
        .order_by(models.User.name)
        .all()
    )
    return [
        schemas.ParticipantEntry(
            **schemas.RegistrationResponse.model_validate(reg).model_dump(),
            user_name=user.name,
            user_email=user.email,
        )
        for reg, user in rows
    ]


@app.patch(
    "/api/admin/registrations/{registration_id}/status",
    response_model=schemas.StatusUpdateResponse,
)
def update_payment_status(
    registration_id: str,
    update: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    role: str = Depends(verify_reviewer),
):
    # Retired combos still cascade, so include inactive catalog entries
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    change = payments.set_payment_status(db, registration_id, update.payment_status, snapshot)
    audit.record(
        db, role, "set_status",
        f"{registration_id}: {change.old_status} -> {change.new_status} (+{change.cascaded} cascaded)",
    )
    return schemas.StatusUpdateResponse(**change.model_dump())


@app.post("/api/admin/users/{user_id}/approve", response_model=schemas.BulkApproveResponse)
def approve_user(user_id: str, db: Session = Depends(get_db), role: str = Depends(verify_reviewer)):
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    approved = payments.approve_pending(db, snapshot, user_id=user_id)
    audit.record(db, role, "bulk_approve", f"user {user_id}: {approved} row(s)")
    return schemas.BulkApproveResponse(approved=approved)


@app.post(
    "/api/admin/participants/{target_type}/{target_id}/approve",
    response_model=schemas.BulkApproveResponse,
)
def approve_participants(target_type: str, target_id: str, db: Session = Depends(get_db),
                         role: str = Depends(verify_reviewer)):
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    approved = payments.approve_pending(db, snapshot, target_type=target_type, target_id=target_id)
    audit.record(db, role, "bulk_approve", f"{target_type} {target_id}: {approved} row(s)")
    return schemas.BulkApproveResponse(approved=approved)


@app.post("/api/admin/registrations/approve", response_model=schemas.BulkApproveResponse)
def approve_registrations(payload: schemas.BulkApproveRequest, db: Session = Depends(get_db),
                          role: str = Depends(verify_reviewer)):
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    approved = payments.approve_pending(db, snapshot, registration_ids=payload.registration_ids)
    audit.record(db, role, "bulk_approve", f"{len(payload.registration_ids)} id(s): {approved} row(s)")
    return schemas.BulkApproveResponse(approved=approved)


# ---------------------------------------------------------------------------
# Attendance  (scanner key)
# ---------------------------------------------------------------------------

@app.post("/api/admin/scan", response_model=schemas.ScanResponse)
def scan_badge(
    scan: schemas.ScanRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    role: str = Depends(verify_scanner),
):
    snapshot = catalog_cache.get(db, active_only=False, fresh=True)
    item = snapshot.item(scan.target_type, scan.target_id)
    if item is None:
        raise NotFoundError("Scan target not found.")

    def notify(user, target_name, timestamp):
        # Runs after the response is sent; a failed message never undoes the check-in
        background_tasks.add_task(
            notifications.notify_attendance,
            schemas.UserResponse.model_validate(user), target_name, timestamp,
        )

    recorder = attendance.AttendanceRecorder(db, notify=notify)
    outcome = recorder.record_scan(scanners.get(scan.scanner_id), scan.payload, scan.target(item.name))

    if isinstance(outcome, attendance.Accepted):
        audit.record(db, role, "checkin",
                     f"{outcome.user_id} at {scan.target_type} {scan.target_id} by {scan.scanner_id}")
        return schemas.ScanResponse(
            success=True, status=outcome.status, message=f"Welcome, {outcome.user_name}!",
            user_id=outcome.user_id, user_name=outcome.user_name, scan_time=outcome.scan_time,
        )
    return schemas.ScanResponse(
        success=False, status=outcome.status, message=outcome.message, reason=outcome.reason.value,
    )


@app.get(
    "/api/admin/attendance",
    response_model=List[schemas.AttendanceResponse],
    dependencies=[Depends(verify_any_admin)],
)
def get_attendance(target_type: Optional[str] = None, target_id: Optional[str] = None,
                   db: Session = Depends(get_db)):
    return attendance.list_attendance(db, target_type, target_id)


@app.get(
    "/api/admin/audit",
    response_model=List[schemas.AuditLogResponse],
    dependencies=[Depends(verify_coordinator)],
)
def get_audit_log(limit: int = 200, db: Session = Depends(get_db)):
    return (
        db.query(models.AuditLog)
        .order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc())
        .limit(limit)
        .all()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
