import csv
import io
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import ActivityLog, Document, Project, Task, User

EXPORT_COLUMNS: Dict[str, List[str]] = {
    "projects": ["id", "title", "status", "manager_id", "start_date", "end_date", "due_date", "created_at"],
    "tasks": ["id", "title", "status", "priority", "project_id", "stage_id", "due_date", "completed_at", "created_at"],
    "users": ["id", "name", "email", "role", "is_active", "created_at"],
    "documents": ["id", "name", "file_type", "file_size", "project_id", "task_id", "created_at"],
    "activity_logs": ["id", "user_id", "action", "entity_type", "entity_id", "details", "created_at"],
}

_MODELS = {
    "projects": Project,
    "tasks": Task,
    "users": User,
    "documents": Document,
    "activity_logs": ActivityLog,
}


def collect(db: Session, types: Iterable[str], start: Optional[date] = None, end: Optional[date] = None) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {}
    for name in dict.fromkeys(types):
        model = _MODELS[name]
        stmt = select(model).order_by(model.created_at)
        if start:
            stmt = stmt.where(model.created_at >= datetime.combine(start, time.min))
        if end:
            stmt = stmt.where(model.created_at < datetime.combine(end + timedelta(days=1), time.min))
        columns = EXPORT_COLUMNS[name]
        out[name] = [{c: getattr(row, c) for c in columns} for row in db.scalars(stmt).all()]
    return out


def _cell(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is None:
        return ""
    return value


def to_csv(data: Dict[str, List[Dict[str, Any]]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    for name, rows in data.items():
        writer.writerow([f"# {name}"])
        columns = EXPORT_COLUMNS[name]
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row[c]) for c in columns])
        writer.writerow([])
    return buf.getvalue()
