import logging

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def record(db: Session, role: str, action: str, detail: str, commit: bool = True) -> None:
    """Append an audit row for a staff action."""
    db.add(models.AuditLog(role=role, action=action, detail=detail))
    if commit:
        db.commit()
    logger.info("[%s] %s: %s", role, action, detail)
