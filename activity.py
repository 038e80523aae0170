from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import ActivityLog


def log_activity(
    db: Session,
    user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """Stage an audit row on the session. Committed with the caller's transaction."""
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        meta=metadata,
    )
    db.add(entry)
    return entry
