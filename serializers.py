"""
Row -> JSON dict conversion.

Handlers return plain dicts; FastAPI encodes dates and datetimes.
"""
from typing import Any, Dict, Optional

from models import (
    ActivityLog,
    Document,
    Notification,
    NotificationPreference,
    Permission,
    Project,
    Role,
    RolePermission,
    Stage,
    Task,
    TaskDependency,
    TaskResponse,
    User,
    UserSettings,
)


def user_brief(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def user_out(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "phone": user.phone,
        "is_active": user.is_active,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


def project_out(project: Project, task_count: Optional[int] = None) -> Dict[str, Any]:
    data = {
        "id": project.id,
        "title": project.title,
        "description": project.description,
        "status": project.status,
        "start_date": project.start_date,
        "end_date": project.end_date,
        "due_date": project.due_date,
        "manager_id": project.manager_id,
        "manager": user_brief(project.manager),
        "manager_name": project.manager.name if project.manager else None,
        "created_by_id": project.created_by_id,
        "created_by_name": project.created_by.name if project.created_by else None,
        "members": [user_brief(m) for m in project.members],
        "stage_count": len(project.stages),
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }
    data["task_count"] = task_count if task_count is not None else len(project.tasks)
    return data


def stage_out(stage: Stage) -> Dict[str, Any]:
    return {
        "id": stage.id,
        "name": stage.name,
        "description": stage.description,
        "position": stage.position,
        "order": stage.position,
        "duration": stage.duration,
        "status": stage.status,
        "dependencies": list(stage.dependencies or []),
        "project_id": stage.project_id,
        "created_by_id": stage.created_by_id,
        "created_at": stage.created_at,
        "updated_at": stage.updated_at,
    }


def task_out(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "due_date": task.due_date,
        "completed_at": task.completed_at,
        "refusal_reason": task.refusal_reason,
        "project_id": task.project_id,
        "project": {"id": task.project.id, "title": task.project.title} if task.project else None,
        "stage_id": task.stage_id,
        "stage": {"id": task.stage.id, "name": task.stage.name} if task.stage else None,
        "created_by_id": task.created_by_id,
        "created_by_name": task.created_by.name if task.created_by else None,
        "assignees": [user_brief(u) for u in task.assignees],
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def task_response_out(resp: TaskResponse) -> Dict[str, Any]:
    return {
        "id": resp.id,
        "task_id": resp.task_id,
        "user_id": resp.user_id,
        "response": resp.response,
        "reason": resp.reason,
        "responded_at": resp.responded_at,
    }


def dependency_out(dep: TaskDependency) -> Dict[str, Any]:
    return {
        "id": dep.id,
        "task_id": dep.task_id,
        "dependent_task_id": dep.dependent_task_id,
        "created_at": dep.created_at,
    }


def document_out(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "name": doc.name,
        "description": doc.description,
        "file_url": doc.file_url,
        "file_type": doc.file_type,
        "file_size": doc.file_size,
        "project_id": doc.project_id,
        "project_title": doc.project.title if doc.project else None,
        "task_id": doc.task_id,
        "task_title": doc.task.title if doc.task else None,
        "uploaded_by_id": doc.uploaded_by_id,
        "uploaded_by_name": doc.uploaded_by.name if doc.uploaded_by else None,
        "created_at": doc.created_at,
        "updated_at": doc.updated_at,
    }


def activity_out(entry: ActivityLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "user_name": entry.user.name if entry.user else None,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "details": entry.details,
        "metadata": entry.meta,
        "created_at": entry.created_at,
    }


def notification_out(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "body": n.body,
        "data": n.data,
        "read": n.read,
        "created_at": n.created_at,
    }


def permission_out(p: Permission) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "resource": p.resource,
        "action": p.action,
    }


def role_out(role: Role) -> Dict[str, Any]:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "permissions": sorted(rp.permission.name for rp in role.role_permissions),
    }


def role_permission_out(rp: RolePermission) -> Dict[str, Any]:
    return {
        "id": rp.id,
        "role_id": rp.role_id,
        "role_name": rp.role.name,
        "permission_id": rp.permission_id,
        "permission_name": rp.permission.name,
        "created_at": rp.created_at,
    }


SETTINGS_FIELDS = (
    "language",
    "timezone",
    "theme",
    "date_format",
    "items_per_page",
    "font_size",
    "compact_mode",
    "notifications_enabled",
    "email_notifications",
)

PREFERENCE_FIELDS = (
    "email_task_assigned",
    "email_task_updated",
    "email_task_due",
    "email_stage_completed",
    "email_project_created",
    "push_notifications",
    "daily_summary",
)


def settings_out(s: UserSettings) -> Dict[str, Any]:
    data = {f: getattr(s, f) for f in SETTINGS_FIELDS}
    data.update({"user_id": s.user_id, "updated_at": s.updated_at})
    return data


def preferences_out(p: NotificationPreference) -> Dict[str, Any]:
    data = {f: getattr(p, f) for f in PREFERENCE_FIELDS}
    data.update({"user_id": p.user_id, "updated_at": p.updated_at})
    return data


def user_public(user: User) -> Dict[str, Any]:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role}
