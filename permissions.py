"""
Role mapping and permission evaluation.

Stored user roles are free-form strings (ADMIN, PROJECT_MANAGER, legacy
spellings...). They are normalized to one of ``admin``, ``manager`` or
``employee`` and checked against the role -> permission table. A permission is
a ``resource.action`` pair; ``manage`` on a resource implies every action on it
and resource ``*`` matches every resource.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

import config
from models import Permission, Project, Role, RolePermission, Task, UserSettings, project_members, task_assignees

logger = logging.getLogger("permissions")

NORMALIZED_ROLES = ("admin", "manager", "employee")

_ROLE_ALIASES = {
    "ADMIN": "admin",
    "MANAGER": "manager",
    "PROJECT_MANAGER": "manager",
    "EMPLOYEE": "employee",
    "EMPLOYE": "employee",
    "USER": "employee",
    "VIEWER": "employee",
}

CRUD = ("create", "read", "update", "delete")

DEFAULT_PERMISSIONS: List[Tuple[str, str, str]] = (
    [(res, act, f"{act.capitalize()} {res}") for res in ("projects", "tasks", "stages", "documents", "users") for act in CRUD]
    + [
        ("tasks", "assign", "Assign tasks to users"),
        ("activity-logs", "read", "Read the activity log"),
        ("dashboard", "read", "Read dashboard statistics"),
        ("roles", "manage", "Manage roles and permissions"),
        ("reminders", "manage", "Trigger the reminder batch"),
        ("export", "read", "Export data"),
        ("*", "manage", "Full administrative access"),
    ]
)

# resource -> actions granted; "*" as action means every seeded action
DEFAULT_ROLE_GRANTS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "admin": {"*": ("*",)},
    "manager": {
        "projects": ("*",),
        "tasks": ("*",),
        "stages": ("*",),
        "documents": ("*",),
        "activity-logs": ("*",),
        "dashboard": ("*",),
        "users": ("read",),
    },
    "employee": {
        "tasks": ("create", "read", "update"),
        "stages": ("create", "read", "update"),
        "documents": ("create", "read", "update"),
        "projects": ("read",),
        "activity-logs": ("read",),
        "dashboard": ("read",),
    },
}

ROLE_DESCRIPTIONS = {
    "admin": "Administrator with full access",
    "manager": "Project manager",
    "employee": "Team member",
}


# keyed by the primary language subtag of UserSettings.language
DENIAL_MESSAGES = {
    "fr": "Permission refusée : {role} ne peut pas {action} {resource}",
    "en": "Permission denied: {role} cannot {action} {resource}",
}


@dataclass
class PermissionCheck:
    allowed: bool
    error: Optional[str] = None


def permission_name(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def map_role(db_role: Optional[str]) -> str:
    if not db_role:
        return "employee"
    return _ROLE_ALIASES.get(db_role.strip().upper(), "employee")


def role_permissions(db: Session, role: str) -> Set[Tuple[str, str]]:
    rows = db.execute(
        select(Permission.resource, Permission.action)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, Role.id == RolePermission.role_id)
        .where(Role.name == role)
    ).all()
    return {(r.resource, r.action) for r in rows}


def has_permission(db: Session, role: str, resource: str, action: str) -> bool:
    granted = role_permissions(db, role)
    for res in (resource, "*"):
        if (res, action) in granted or (res, "manage") in granted:
            return True
    return False


def denial_message(role: str, resource: str, action: str, language: Optional[str] = None) -> str:
    lang = (language or config.DEFAULT_LANGUAGE).split("-")[0].split("_")[0].lower()
    template = DENIAL_MESSAGES.get(lang) or DENIAL_MESSAGES.get(config.DEFAULT_LANGUAGE, DENIAL_MESSAGES["fr"])
    return template.format(role=role, action=action, resource=resource)


def user_language(db: Session, user_id: str) -> str:
    """Language from the user's settings row, or the default before one exists."""
    language = db.scalar(select(UserSettings.language).where(UserSettings.user_id == user_id))
    return language or config.DEFAULT_LANGUAGE


def require_permission(
    db: Session, role: str, resource: str, action: str, language: Optional[str] = None
) -> PermissionCheck:
    if has_permission(db, role, resource, action):
        return PermissionCheck(allowed=True)
    return PermissionCheck(allowed=False, error=denial_message(role, resource, action, language))


# ----- Ownership helpers -----

def can_manage_project(user, project: Project) -> bool:
    return user.role == "admin" or (user.role == "manager" and project.manager_id == user.id)


def can_access_project(db: Session, user, project: Project) -> bool:
    if user.role == "admin" or user.id in (project.manager_id, project.created_by_id):
        return True
    member = db.execute(
        select(project_members.c.user_id).where(
            project_members.c.project_id == project.id, project_members.c.user_id == user.id
        )
    ).first()
    if member:
        return True
    assigned = db.execute(
        select(Task.id)
        .join(task_assignees, task_assignees.c.task_id == Task.id)
        .where(Task.project_id == project.id, task_assignees.c.user_id == user.id)
        .limit(1)
    ).first()
    return assigned is not None


def can_edit_task(user, task: Task) -> bool:
    if user.role == "admin":
        return True
    if user.role == "manager" and task.project is not None and task.project.manager_id == user.id:
        return True
    return task.is_assignee(user.id)


# ----- Seeding -----

def init_permissions(db: Session):
    """Create the default permissions, roles and grants. Safe to run repeatedly."""
    by_pair: Dict[Tuple[str, str], Permission] = {
        (p.resource, p.action): p for p in db.scalars(select(Permission)).all()
    }
    for resource, action, description in DEFAULT_PERMISSIONS:
        if (resource, action) not in by_pair:
            name = "admin.access" if resource == "*" else permission_name(resource, action)
            perm = Permission(name=name, resource=resource, action=action, description=description)
            db.add(perm)
            by_pair[(resource, action)] = perm
    db.flush()

    roles = {r.name: r for r in db.scalars(select(Role)).all()}
    for name in NORMALIZED_ROLES:
        if name not in roles:
            roles[name] = Role(name=name, description=ROLE_DESCRIPTIONS[name])
            db.add(roles[name])
    db.flush()

    existing = {(rp.role_id, rp.permission_id) for rp in db.scalars(select(RolePermission)).all()}
    created = 0
    for role_name, grants in DEFAULT_ROLE_GRANTS.items():
        role = roles[role_name]
        for (resource, action), perm in by_pair.items():
            wanted = grants.get(resource) if role_name != "admin" else ("*",)
            if not wanted or ("*" not in wanted and action not in wanted):
                continue
            if (role.id, perm.id) in existing:
                continue
            db.add(RolePermission(role_id=role.id, permission_id=perm.id))
            existing.add((role.id, perm.id))
            created += 1
    db.commit()
    if created:
        logger.info("Seeded %d role permission grants", created)
