import io
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import func, inspect, or_, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

import config
import confirmations
import exports
import workflow
from activity import log_activity
from database import SessionLocal, get_db, init_db, run_reads, transaction
from errors import ConflictError, Forbidden, InternalError, NotFoundError, Unauthorized, ValidationError, register_error_handlers
from models import (
    USER_ROLES,
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
    User,
    UserSettings,
    project_members,
    task_assignees,
    utcnow,
)
from notifications import (
    EmailMessage,
    NotificationType,
    Recipient,
    dispatch_emails,
    filter_by_preference,
    notify_in_app,
    responsible_recipients,
    stage_completed_email,
    task_assigned_email,
)
from permissions import can_access_project, can_edit_task, can_manage_project, init_permissions, require_permission, user_language
from reminders import process_reminders
from schemas import (
    DocumentCreate,
    DocumentPatch,
    ExportRequest,
    LoginRequest,
    PermissionCreate,
    PreferencesUpdate,
    ProfileUpdate,
    ProjectCreate,
    ProjectPatch,
    RefuseRequest,
    RegisterRequest,
    RejectRequest,
    RolePermissionCreate,
    SettingsUpdate,
    StageCreate,
    StagePatch,
    TaskCreate,
    TaskDependencyCreate,
    TaskPatch,
    TaskRespondRequest,
    UserCreate,
    UserPatch,
    is_valid_email,
)
from security import CurrentUser, bearer_scheme, create_access_token, get_current_user, hash_password, verify_password
from serializers import (
    activity_out,
    dependency_out,
    document_out,
    notification_out,
    permission_out,
    preferences_out,
    project_out,
    role_out,
    role_permission_out,
    settings_out,
    stage_out,
    task_out,
    task_response_out,
    user_out,
    user_public,
)
from storage import ObjectStorage, get_storage, object_key

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("projects_api")


def seed_admin(db: Session):
    if not (config.SEED_ADMIN_EMAIL and config.SEED_ADMIN_PASSWORD):
        return
    email = config.SEED_ADMIN_EMAIL.lower()
    if db.scalar(select(User.id).where(User.email == email)):
        return
    db.add(User(name="Administrator", email=email, password_hash=hash_password(config.SEED_ADMIN_PASSWORD), role="ADMIN"))
    db.commit()
    logger.info("Created bootstrap admin %s", email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    with SessionLocal() as db:
        init_permissions(db)
        seed_admin(db)
    if config.JWT_SECRET == "dev-secret-change-me":
        logger.warning("JWT_SECRET is not set, using the development secret")
    yield


app = FastAPI(title="Role-based Project Management API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

CLOSED_TASK_STATUSES = ("COMPLETED", "CANCELLED")


# ----- Helpers -----

def requires(resource: str, action: str):
    """Dependency: authenticated user holding ``resource.action``."""

    def checker(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)) -> CurrentUser:
        ensure_permission(db, user, resource, action)
        return user

    return checker


def ensure_permission(db: Session, user: CurrentUser, resource: str, action: str):
    check = require_permission(db, user.role, resource, action, user_language(db, user.id))
    if not check.allowed:
        raise Forbidden(check.error)


def get_or_404(db: Session, model, obj_id: str, label: str):
    obj = db.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


def patch_changes(payload, required: tuple = ()) -> Dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    for name in required:
        if name in changes:
            value = changes[name]
            if isinstance(value, str):
                value = value.strip()
                changes[name] = value
            if value is None or value == "":
                raise ValidationError(f"{name} cannot be empty")
    return changes


def load_users(db: Session, user_ids: List[str]) -> List[User]:
    ids = list(dict.fromkeys(user_ids or []))
    if not ids:
        return []
    users = db.scalars(select(User).where(User.id.in_(ids))).all()
    found = {u.id for u in users}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"User not found: {missing[0]}")
    return list(users)


def normalize_user_role(value: str) -> str:
    aliases = {
        "admin": "ADMIN",
        "manager": "PROJECT_MANAGER",
        "project_manager": "PROJECT_MANAGER",
        "user": "EMPLOYEE",
        "employee": "EMPLOYEE",
    }
    role = aliases.get((value or "").strip().lower())
    if role is None and (value or "").strip().upper() in USER_ROLES:
        role = value.strip().upper()
    if role is None:
        raise ValidationError(f"Invalid role: {value}")
    return role


def member_project_ids(user_id: str):
    return select(project_members.c.project_id).where(project_members.c.user_id == user_id)


def assigned_task_ids(user_id: str):
    return select(task_assignees.c.task_id).where(task_assignees.c.user_id == user_id)


def visible_projects_clause(user: CurrentUser):
    assigned_projects = select(Task.project_id).where(Task.id.in_(assigned_task_ids(user.id)))
    return or_(
        Project.manager_id == user.id,
        Project.created_by_id == user.id,
        Project.id.in_(member_project_ids(user.id)),
        Project.id.in_(assigned_projects),
    )


def visible_tasks_clause(user: CurrentUser):
    own_projects = select(Project.id).where(
        or_(
            Project.manager_id == user.id,
            Project.created_by_id == user.id,
            Project.id.in_(member_project_ids(user.id)),
        )
    )
    return or_(Task.id.in_(assigned_task_ids(user.id)), Task.project_id.in_(own_projects))


def require_project_access(db: Session, user: CurrentUser, project: Project):
    if not can_access_project(db, user, project):
        raise Forbidden("You do not have access to this project")


def require_project_manager(user: CurrentUser, project: Project):
    if not can_manage_project(user, project):
        raise Forbidden("Only the project manager or an administrator can do this")


def accessible_project_for(db: Session, user: CurrentUser, project_id: str) -> Project:
    project = get_or_404(db, Project, project_id, "Project")
    require_project_access(db, user, project)
    return project


def schedule_emails(background_tasks: BackgroundTasks, emails: List[EmailMessage]):
    if emails:
        background_tasks.add_task(dispatch_emails, emails)


# ----- Basic endpoints -----
@app.get("/")
def root():
    return {"ok": True, "service": "backend", "message": "Project Management API running"}


@app.get('/test')
def test_database(db: Session = Depends(get_db)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_url": "set" if os.getenv("DATABASE_URL") else "default",
        "tables": [],
    }
    try:
        db.execute(text("SELECT 1"))
        response["database"] = "connected"
        response["tables"] = sorted(inspect(db.get_bind()).get_table_names())[:20]
    except SQLAlchemyError as e:
        response["database"] = f"error: {str(e)[:50]}"
    return response


# ----- Auth & profile -----
@app.post('/auth/login')
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    if not payload.email or not payload.password:
        raise ValidationError("Email and password are required")
    user = db.scalar(select(User).where(User.email == payload.email.strip().lower()))
    valid = verify_password(payload.password, user.password_hash if user else None)
    if user is None or not user.is_active or not valid:
        raise Unauthorized("Invalid credentials")
    return {"success": True, "user": user_public(user), "token": create_access_token(user)}


@app.post('/auth/register', status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    name = (payload.name or "").strip()
    email = (payload.email or "").strip().lower()
    if not name or not email or not payload.password:
        raise ValidationError("Name, email and password are required")
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    if db.scalar(select(User.id).where(User.email == email)):
        raise ConflictError("A user with this email already exists")
    user = User(name=name, email=email, password_hash=hash_password(payload.password), role="EMPLOYEE")
    try:
        with transaction(db):
            db.add(user)
            db.flush()
            log_activity(db, user.id, "register", "user", user.id, details=f"{name} registered")
    except IntegrityError:
        raise ConflictError("A user with this email already exists")
    return {"message": "User created successfully", "user": user_public(user)}


@app.get('/profile')
def get_profile(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return user_out(get_or_404(db, User, user.id, "User"))


@app.put('/profile')
def update_profile(payload: ProfileUpdate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    changes = patch_changes(payload, required=("name", "email"))
    me = get_or_404(db, User, user.id, "User")
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        if not is_valid_email(changes["email"]):
            raise ValidationError("Invalid email format")
        taken = db.scalar(select(User.id).where(User.email == changes["email"], User.id != me.id))
        if taken:
            raise ConflictError("This email is already used by another account")
    try:
        with transaction(db):
            for key, value in changes.items():
                setattr(me, key, value)
            log_activity(db, me.id, "update", "user_profile", me.id, details="Profile updated", metadata={"fields": sorted(changes)})
    except IntegrityError:
        raise ConflictError("This email is already used by another account")
    return user_out(me)


# ----- Users -----
@app.get('/users')
def list_users(role: Optional[str] = None, user: CurrentUser = Depends(requires("users", "read")), db: Session = Depends(get_db)):
    stmt = select(User).order_by(User.name)
    if role:
        stmt = stmt.where(User.role == role.upper())
    return [user_out(u) for u in db.scalars(stmt).all()]


@app.post('/users', status_code=201)
def create_user(payload: UserCreate, user: CurrentUser = Depends(requires("users", "create")), db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    role = normalize_user_role(payload.role)
    if db.scalar(select(User.id).where(User.email == email)):
        raise ConflictError("A user with this email already exists")
    new_user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        role=role,
        phone=payload.phone,
    )
    try:
        with transaction(db):
            db.add(new_user)
            db.flush()
            log_activity(db, user.id, "create", "user", new_user.id, details=f"Created user {email} ({role})")
    except IntegrityError:
        raise ConflictError("A user with this email already exists")
    return user_out(new_user)


@app.get('/users/{user_id}')
def get_user(user_id: str, user: CurrentUser = Depends(requires("users", "read")), db: Session = Depends(get_db)):
    return user_out(get_or_404(db, User, user_id, "User"))


@app.put('/users/{user_id}')
@app.patch('/users/{user_id}')
def update_user(user_id: str, payload: UserPatch, user: CurrentUser = Depends(requires("users", "update")), db: Session = Depends(get_db)):
    target = get_or_404(db, User, user_id, "User")
    changes = patch_changes(payload, required=("name", "email", "password", "role", "is_active"))
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        if not is_valid_email(changes["email"]):
            raise ValidationError("Invalid email format")
        if db.scalar(select(User.id).where(User.email == changes["email"], User.id != target.id)):
            raise ConflictError("A user with this email already exists")
    if "role" in changes:
        changes["role"] = normalize_user_role(changes["role"])
    if "password" in changes:
        changes["password_hash"] = hash_password(changes.pop("password"))
    try:
        with transaction(db):
            for key, value in changes.items():
                setattr(target, key, value)
            fields = sorted(k for k in changes if k != "password_hash")
            log_activity(db, user.id, "update", "user", target.id, details=f"Updated user {target.email}", metadata={"fields": fields})
    except IntegrityError:
        raise ConflictError("A user with this email already exists")
    return user_out(target)


@app.delete('/users/{user_id}')
def delete_user(user_id: str, user: CurrentUser = Depends(requires("users", "delete")), db: Session = Depends(get_db)):
    if user_id == user.id:
        raise ValidationError("You cannot delete your own account")
    target = get_or_404(db, User, user_id, "User")
    with transaction(db):
        email = target.email
        db.delete(target)
        log_activity(db, user.id, "delete", "user", user_id, details=f"Deleted user {email}")
    return {"message": "User deleted"}


# ----- Projects -----
def project_with_relations():
    return select(Project).options(
        selectinload(Project.manager),
        selectinload(Project.created_by),
        selectinload(Project.members),
        selectinload(Project.stages),
        selectinload(Project.tasks),
    )


@app.get('/projects')
def list_projects(status: Optional[str] = None, user: CurrentUser = Depends(requires("projects", "read")), db: Session = Depends(get_db)):
    stmt = project_with_relations().order_by(Project.created_at.desc())
    if status:
        stmt = stmt.where(Project.status == status.upper())
    if not user.is_admin:
        stmt = stmt.where(visible_projects_clause(user))
    return [project_out(p) for p in db.scalars(stmt).all()]


@app.post('/projects', status_code=201)
def create_project(payload: ProjectCreate, user: CurrentUser = Depends(requires("projects", "create")), db: Session = Depends(get_db)):
    title = (payload.title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    manager_id = None
    if payload.manager_id and user.is_admin:
        manager_id = get_or_404(db, User, payload.manager_id, "Manager").id
    elif user.role in ("admin", "manager"):
        manager_id = user.id
    members = load_users(db, payload.member_ids)
    project = Project(
        title=title,
        description=payload.description,
        status=payload.status,
        start_date=payload.start_date,
        end_date=payload.end_date,
        due_date=payload.due_date,
        manager_id=manager_id,
        created_by_id=user.id,
    )
    project.members = members
    with transaction(db):
        db.add(project)
        db.flush()
        log_activity(db, user.id, "create", "project", project.id, details=f"Created project \"{title}\"")
    return project_out(project)


@app.get('/projects/{project_id}')
def get_project(project_id: str, user: CurrentUser = Depends(requires("projects", "read")), db: Session = Depends(get_db)):
    return project_out(accessible_project_for(db, user, project_id))


@app.put('/projects/{project_id}')
@app.patch('/projects/{project_id}')
def update_project(project_id: str, payload: ProjectPatch, user: CurrentUser = Depends(requires("projects", "update")), db: Session = Depends(get_db)):
    project = get_or_404(db, Project, project_id, "Project")
    require_project_manager(user, project)
    changes = patch_changes(payload, required=("title", "status"))
    if "manager_id" in changes:
        if not user.is_admin:
            raise Forbidden("Only an administrator can change the project manager")
        if changes["manager_id"]:
            get_or_404(db, User, changes["manager_id"], "Manager")
    members = None
    if "member_ids" in changes:
        members = load_users(db, changes.pop("member_ids") or [])
    with transaction(db):
        for key, value in changes.items():
            setattr(project, key, value)
        if members is not None:
            project.members = members
        fields = sorted(changes) + (["member_ids"] if members is not None else [])
        log_activity(db, user.id, "update", "project", project.id, details=f"Updated project \"{project.title}\"", metadata={"fields": fields})
    return project_out(project)


@app.delete('/projects/{project_id}')
def delete_project(project_id: str, user: CurrentUser = Depends(requires("projects", "delete")), db: Session = Depends(get_db)):
    project = get_or_404(db, Project, project_id, "Project")
    require_project_manager(user, project)
    with transaction(db):
        title = project.title
        db.delete(project)
        log_activity(db, user.id, "delete", "project", project_id, details=f"Deleted project \"{title}\"")
    return {"message": "Project deleted"}


# ----- Stages -----
def validate_stage_dependencies(db: Session, project_id: str, stage_id: Optional[str], ids: List[str]) -> List[str]:
    ids = list(dict.fromkeys(ids or []))
    if stage_id and stage_id in ids:
        raise ValidationError("A stage cannot depend on itself")
    if not ids:
        return []
    found = db.scalars(select(Stage.id).where(Stage.id.in_(ids), Stage.project_id == project_id)).all()
    if len(found) != len(ids):
        raise ValidationError("Stage dependencies must be stages of the same project")
    return ids


def stage_completion_notices(db: Session, stage: Stage, actor: CurrentUser) -> List[EmailMessage]:
    recipients = responsible_recipients(db, stage.project, exclude_user_id=actor.id)
    notify_in_app(
        db,
        [r.id for r in recipients],
        NotificationType.STAGE_COMPLETED,
        "Stage completed",
        f"{actor.name} completed the stage \"{stage.name}\"",
        {"stage_id": stage.id, "project_id": stage.project_id},
    )
    return [stage_completed_email(r, stage, actor.name) for r in filter_by_preference(db, recipients, "email_stage_completed")]


def apply_stage_patch(db: Session, user: CurrentUser, stage: Stage, payload: StagePatch) -> List[EmailMessage]:
    require_project_manager(user, stage.project)
    changes = patch_changes(payload, required=("name", "status", "position"))
    if "dependency_ids" in changes:
        changes["dependencies"] = validate_stage_dependencies(db, stage.project_id, stage.id, changes.pop("dependency_ids"))
    emails: List[EmailMessage] = []
    with transaction(db):
        was_completed = stage.status == "COMPLETED"
        for key, value in changes.items():
            setattr(stage, key, value)
        if stage.status == "COMPLETED" and not was_completed:
            emails = stage_completion_notices(db, stage, user)
        log_activity(db, user.id, "update", "stage", stage.id, details=f"Updated stage \"{stage.name}\"", metadata={"fields": sorted(changes)})
    return emails


def remove_stage(db: Session, user: CurrentUser, stage: Stage):
    require_project_manager(user, stage.project)
    with transaction(db):
        siblings = db.scalars(select(Stage).where(Stage.project_id == stage.project_id, Stage.id != stage.id)).all()
        for sibling in siblings:
            if stage.id in (sibling.dependencies or []):
                sibling.dependencies = [d for d in sibling.dependencies if d != stage.id]
        name = stage.name
        db.delete(stage)
        log_activity(db, user.id, "delete", "stage", stage.id, details=f"Deleted stage \"{name}\"")


def stage_in_project(db: Session, project_id: str, stage_id: str) -> Stage:
    get_or_404(db, Project, project_id, "Project")
    stage = db.get(Stage, stage_id)
    if stage is None or stage.project_id != project_id:
        raise NotFoundError("Stage not found in this project")
    return stage


@app.get('/projects/{project_id}/stages')
def list_project_stages(project_id: str, user: CurrentUser = Depends(requires("stages", "read")), db: Session = Depends(get_db)):
    project = accessible_project_for(db, user, project_id)
    return [stage_out(s) for s in project.stages]


@app.put('/projects/{project_id}/stages/{stage_id}')
def update_project_stage(project_id: str, stage_id: str, payload: StagePatch, background_tasks: BackgroundTasks, user: CurrentUser = Depends(requires("stages", "update")), db: Session = Depends(get_db)):
    stage = stage_in_project(db, project_id, stage_id)
    schedule_emails(background_tasks, apply_stage_patch(db, user, stage, payload))
    return stage_out(stage)


@app.delete('/projects/{project_id}/stages/{stage_id}')
def delete_project_stage(project_id: str, stage_id: str, user: CurrentUser = Depends(requires("stages", "delete")), db: Session = Depends(get_db)):
    remove_stage(db, user, stage_in_project(db, project_id, stage_id))
    return {"message": "Stage deleted"}


@app.get('/stages')
def list_stages(project_id: Optional[str] = None, user: CurrentUser = Depends(requires("stages", "read")), db: Session = Depends(get_db)):
    stmt = select(Stage).join(Project, Project.id == Stage.project_id).order_by(Stage.project_id, Stage.position)
    if project_id:
        stmt = stmt.where(Stage.project_id == project_id)
    if not user.is_admin:
        stmt = stmt.where(visible_projects_clause(user))
    return [stage_out(s) for s in db.scalars(stmt).all()]


@app.post('/stages', status_code=201)
def create_stage(payload: StageCreate, user: CurrentUser = Depends(requires("stages", "create")), db: Session = Depends(get_db)):
    name = (payload.name or "").strip()
    if not name or not payload.project_id:
        raise ValidationError("Name and project_id are required")
    project = get_or_404(db, Project, payload.project_id, "Project")
    require_project_manager(user, project)
    dependencies = validate_stage_dependencies(db, project.id, None, payload.dependency_ids)
    position = payload.position
    if position is None:
        position = (db.scalar(select(func.max(Stage.position)).where(Stage.project_id == project.id)) or 0) + 1
    stage = Stage(
        name=name,
        description=payload.description,
        position=position,
        duration=payload.duration,
        status=payload.status,
        dependencies=dependencies,
        project_id=project.id,
        created_by_id=user.id,
    )
    with transaction(db):
        db.add(stage)
        db.flush()
        log_activity(db, user.id, "create", "stage", stage.id, details=f"Created stage \"{name}\" in \"{project.title}\"")
    return stage_out(stage)


@app.get('/stages/{stage_id}')
def get_stage(stage_id: str, user: CurrentUser = Depends(requires("stages", "read")), db: Session = Depends(get_db)):
    stage = get_or_404(db, Stage, stage_id, "Stage")
    require_project_access(db, user, stage.project)
    return stage_out(stage)


@app.put('/stages/{stage_id}')
@app.patch('/stages/{stage_id}')
def update_stage(stage_id: str, payload: StagePatch, background_tasks: BackgroundTasks, user: CurrentUser = Depends(requires("stages", "update")), db: Session = Depends(get_db)):
    stage = get_or_404(db, Stage, stage_id, "Stage")
    schedule_emails(background_tasks, apply_stage_patch(db, user, stage, payload))
    return stage_out(stage)


@app.delete('/stages/{stage_id}')
def delete_stage(stage_id: str, user: CurrentUser = Depends(requires("stages", "delete")), db: Session = Depends(get_db)):
    remove_stage(db, user, get_or_404(db, Stage, stage_id, "Stage"))
    return {"message": "Stage deleted"}


@app.post('/stages/{stage_id}/complete')
def complete_stage(stage_id: str, background_tasks: BackgroundTasks, user: CurrentUser = Depends(requires("stages", "update")), db: Session = Depends(get_db)):
    stage = get_or_404(db, Stage, stage_id, "Stage")
    project = stage.project
    require_project_manager(user, project)
    if stage.status == "COMPLETED":
        raise ValidationError("Stage is already completed")
    incomplete = db.scalar(
        select(func.count(Task.id)).where(Task.stage_id == stage.id, Task.status.not_in(CLOSED_TASK_STATUSES))
    )
    if incomplete:
        raise ValidationError("All tasks of this stage must be completed first", incomplete_tasks=incomplete)

    with transaction(db):
        stage.status = "COMPLETED"
        next_stage = db.scalar(
            select(Stage).where(Stage.project_id == project.id, Stage.position == stage.position + 1)
        )
        if next_stage is not None and next_stage.status == "PENDING":
            next_stage.status = "IN_PROGRESS"
        remaining = db.scalar(
            select(func.count(Stage.id)).where(
                Stage.project_id == project.id, Stage.id != stage.id, Stage.status != "COMPLETED"
            )
        )
        all_completed = remaining == 0
        if all_completed and project.manager_id:
            notify_in_app(
                db,
                [project.manager_id],
                NotificationType.PROJECT_COMPLETED,
                "Project completed",
                f"Every stage of \"{project.title}\" is completed",
                {"project_id": project.id},
            )
        emails = stage_completion_notices(db, stage, user)
        log_activity(db, user.id, "complete", "stage", stage.id, details=f"Completed stage \"{stage.name}\"")

    schedule_emails(background_tasks, emails)
    return {
        "success": True,
        "stage": stage_out(stage),
        "next_stage": stage_out(next_stage) if next_stage is not None else None,
        "all_stages_completed": all_completed,
    }


# ----- Tasks -----
def task_with_relations():
    return select(Task).options(
        selectinload(Task.assignees),
        selectinload(Task.project),
        selectinload(Task.stage),
        selectinload(Task.created_by),
    )


def assignment_notices(db: Session, task: Task, assignees: List[User], actor: CurrentUser) -> List[EmailMessage]:
    """Issue link tokens and in-app notices for new assignees; return the emails to send."""
    others = [u for u in assignees if u.id != actor.id]
    if not others:
        return []
    links = {}
    for u in others:
        token = confirmations.issue_token(db, u.id, "task", task.id)
        links[u.id] = (
            f"{config.API_BASE_URL}/tasks/{task.id}/accept-link?token={token}",
            f"{config.API_BASE_URL}/tasks/{task.id}/reject-link?token={token}",
        )
    notify_in_app(
        db,
        [u.id for u in others],
        NotificationType.TASK_ASSIGNED,
        "New task assigned",
        f"{actor.name} assigned you \"{task.title}\"",
        {"task_id": task.id, "project_id": task.project_id},
    )
    recipients = filter_by_preference(db, [Recipient.from_user(u) for u in others], "email_task_assigned")
    return [task_assigned_email(r, task, actor.name, *links[r.id]) for r in recipients]


def check_task_stage(db: Session, project_id: str, stage_id: Optional[str]):
    if stage_id:
        stage = db.get(Stage, stage_id)
        if stage is None or stage.project_id != project_id:
            raise ValidationError("Stage does not belong to this project")


@app.get('/tasks')
def list_tasks(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    stage_id: Optional[str] = None,
    user: CurrentUser = Depends(requires("tasks", "read")),
    db: Session = Depends(get_db),
):
    stmt = task_with_relations().order_by(Task.created_at.desc())
    if status:
        stmt = stmt.where(Task.status == status.upper())
    if project_id:
        stmt = stmt.where(Task.project_id == project_id)
    if stage_id:
        stmt = stmt.where(Task.stage_id == stage_id)
    if not user.is_admin:
        stmt = stmt.where(visible_tasks_clause(user))
    return [task_out(t) for t in db.scalars(stmt).all()]


@app.post('/tasks', status_code=201)
def create_task(payload: TaskCreate, background_tasks: BackgroundTasks, user: CurrentUser = Depends(requires("tasks", "create")), db: Session = Depends(get_db)):
    title = (payload.title or "").strip()
    if not title or not payload.project_id:
        raise ValidationError("Title and project_id are required")
    if payload.status == "REFUSED":
        raise ValidationError("A task can only be refused by one of its assignees")
    project = accessible_project_for(db, user, payload.project_id)
    check_task_stage(db, project.id, payload.stage_id)
    assignees = load_users(db, payload.assignee_ids)
    if any(a.id != user.id for a in assignees):
        ensure_permission(db, user, "tasks", "assign")

    task = Task(
        title=title,
        description=payload.description,
        status=payload.status,
        priority=payload.priority,
        due_date=payload.due_date,
        project_id=project.id,
        stage_id=payload.stage_id,
        created_by_id=user.id,
        completed_at=utcnow() if payload.status == "COMPLETED" else None,
    )
    task.assignees = assignees
    with transaction(db):
        db.add(task)
        db.flush()
        log_activity(
            db,
            user.id,
            "create",
            "task",
            task.id,
            details=f"Created task \"{title}\"",
            metadata={"assignee_ids": [a.id for a in assignees]},
        )
        emails = assignment_notices(db, task, assignees, user)
    schedule_emails(background_tasks, emails)
    return task_out(task)


@app.get('/tasks/{task_id}')
def get_task(task_id: str, user: CurrentUser = Depends(requires("tasks", "read")), db: Session = Depends(get_db)):
    task = get_or_404(db, Task, task_id, "Task")
    if not task.is_assignee(user.id):
        require_project_access(db, user, task.project)
    return task_out(task)


@app.put('/tasks/{task_id}')
@app.patch('/tasks/{task_id}')
def update_task(task_id: str, payload: TaskPatch, background_tasks: BackgroundTasks, user: CurrentUser = Depends(requires("tasks", "update")), db: Session = Depends(get_db)):
    task = get_or_404(db, Task, task_id, "Task")
    if not can_edit_task(user, task):
        raise Forbidden("You are not allowed to modify this task")
    changes = patch_changes(payload, required=("title", "status", "priority"))
    if changes.get("status") == "REFUSED":
        raise ValidationError("Use the refusal endpoint to refuse a task")
    if "stage_id" in changes:
        check_task_stage(db, task.project_id, changes["stage_id"])
    new_assignees = None
    if "assignee_ids" in changes:
        ensure_permission(db, user, "tasks", "assign")
        new_assignees = load_users(db, changes.pop("assignee_ids") or [])

    emails: List[EmailMessage] = []
    with transaction(db):
        old_status = task.status
        for key, value in changes.items():
            setattr(task, key, value)
        if task.status != old_status:
            if task.status == "COMPLETED":
                task.completed_at = utcnow()
            elif old_status == "COMPLETED":
                task.completed_at = None
        if new_assignees is not None:
            previous = {u.id for u in task.assignees}
            task.assignees = new_assignees
            emails.extend(assignment_notices(db, task, [u for u in new_assignees if u.id not in previous], user))
        if task.status != old_status:
            recipients = responsible_recipients(db, task.project, exclude_user_id=user.id)
            notify_in_app(
                db,
                [r.id for r in recipients],
                NotificationType.TASK_UPDATED,
                "Task updated",
                f"{user.name} moved \"{task.title}\" to {task.status}",
                {"task_id": task.id, "from": old_status, "to": task.status},
            )
        fields = sorted(changes) + (["assignee_ids"] if new_assignees is not None else [])
        log_activity(
            db,
            user.id,
            "update",
            "task",
            task.id,
            details=f"Updated task \"{task.title}\"",
            metadata={"fields": fields, "from_status": old_status, "to_status": task.status},
        )
    schedule_emails(background_tasks, emails)
    return task_out(task)


@app.delete('/tasks/{task_id}')
def delete_task(task_id: str, user: CurrentUser = Depends(requires("tasks", "delete")), db: Session = Depends(get_db)):
    task = get_or_404(db, Task, task_id, "Task")
    require_project_manager(user, task.project)
    with transaction(db):
        title = task.title
        db.delete(task)
        log_activity(db, user.id, "delete", "task", task_id, details=f"Deleted task \"{title}\"")
    return {"message": "Task deleted"}


# ----- Task responses -----
@app.post('/tasks/{task_id}/respond', status_code=201)
def respond_to_task(task_id: str, payload: TaskRespondRequest, background_tasks: BackgroundTasks, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    task = workflow.load_task(db, task_id)
    actor = get_or_404(db, User, user.id, "User")
    decision = workflow.record_decision(db, task, actor, accepted=payload.response == workflow.ACCEPTED, reason=payload.reason)
    schedule_emails(background_tasks, decision.emails)
    data = task_response_out(decision.response)
    data["task_status"] = task.status
    return data


@app.get('/tasks/{task_id}/respond')
def get_task_response(task_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    workflow.load_task(db, task_id)
    response = workflow.find_response(db, task_id, user.id)
    return {
        "has_responded": response is not None,
        "response": response.response if response else None,
        "responded_at": response.responded_at if response else None,
    }


@app.post('/tasks/{task_id}/refuse')
def refuse_task(task_id: str, background_tasks: BackgroundTasks, payload: Optional[RefuseRequest] = None, user: CurrentUser = Depends(requires("tasks", "update")), db: Session = Depends(get_db)):
    task = workflow.load_task(db, task_id)
    actor = get_or_404(db, User, user.id, "User")
    decision = workflow.record_decision(db, task, actor, accepted=False, reason=payload.reason if payload else None, action="refused")
    schedule_emails(background_tasks, decision.emails)
    return {"message": "Task refused", "task": task_out(task)}


@app.post('/tasks/{task_id}/reject')
def reject_task(task_id: str, background_tasks: BackgroundTasks, payload: Optional[RejectRequest] = None, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    task = workflow.load_task(db, task_id)
    actor = get_or_404(db, User, user.id, "User")
    decision = workflow.record_decision(db, task, actor, accepted=False, reason=payload.rejection_reason if payload else None, action="reject_task")
    schedule_emails(background_tasks, decision.emails)
    return {"success": True, "message": "Task rejected", "task": task_out(task)}


@app.get('/tasks/{task_id}/reject-link')
def reject_link(task_id: str, token: Optional[str] = None, db: Session = Depends(get_db)):
    return RedirectResponse(workflow.reject_link_target(db, task_id, token), status_code=302)


@app.get('/tasks/{task_id}/accept-link')
def accept_link(task_id: str, background_tasks: BackgroundTasks, token: Optional[str] = None, db: Session = Depends(get_db)):
    errors = {NotFoundError: "task_not_found", Forbidden: "not_assigned", ConflictError: "already_responded", ValidationError: "task_closed"}
    try:
        decision = workflow.accept_link_target(db, task_id, token)
    except confirmations.TokenError as e:
        db.rollback()
        return RedirectResponse(workflow.error_redirect(e.code), status_code=302)
    except (NotFoundError, Forbidden, ConflictError, ValidationError) as e:
        db.rollback()
        return RedirectResponse(workflow.error_redirect(errors[type(e)]), status_code=302)
    schedule_emails(background_tasks, decision.emails)
    return RedirectResponse(workflow.accept_link_redirect(task_id), status_code=302)


# ----- Task dependencies -----
def creates_cycle(db: Session, task_id: str, dependent_task_id: str) -> bool:
    """True when ``task_id`` is already reachable from ``dependent_task_id``."""
    seen = {dependent_task_id}
    frontier = [dependent_task_id]
    while frontier:
        children = db.scalars(
            select(TaskDependency.dependent_task_id).where(TaskDependency.task_id.in_(frontier))
        ).all()
        if task_id in children:
            return True
        frontier = [c for c in children if c not in seen]
        seen.update(frontier)
    return False


@app.get('/task-dependencies')
def list_task_dependencies(
    task_id: Optional[str] = None,
    dependent_task_id: Optional[str] = None,
    user: CurrentUser = Depends(requires("tasks", "read")),
    db: Session = Depends(get_db),
):
    stmt = select(TaskDependency).order_by(TaskDependency.created_at)
    if task_id:
        stmt = stmt.where(TaskDependency.task_id == task_id)
    if dependent_task_id:
        stmt = stmt.where(TaskDependency.dependent_task_id == dependent_task_id)
    return [dependency_out(d) for d in db.scalars(stmt).all()]


@app.post('/task-dependencies', status_code=201)
def create_task_dependency(payload: TaskDependencyCreate, user: CurrentUser = Depends(requires("tasks", "update")), db: Session = Depends(get_db)):
    if not payload.task_id or not payload.dependent_task_id:
        raise ValidationError("task_id and dependent_task_id are required")
    if payload.task_id == payload.dependent_task_id:
        raise ValidationError("A task cannot depend on itself")
    if db.get(Task, payload.task_id) is None or db.get(Task, payload.dependent_task_id) is None:
        raise NotFoundError("One or more tasks do not exist")
    existing = db.scalar(
        select(TaskDependency.id).where(
            TaskDependency.task_id == payload.task_id,
            TaskDependency.dependent_task_id == payload.dependent_task_id,
        )
    )
    if existing:
        raise ConflictError("This dependency already exists")
    if creates_cycle(db, payload.task_id, payload.dependent_task_id):
        raise ValidationError("This dependency would create a cycle")
    dep = TaskDependency(task_id=payload.task_id, dependent_task_id=payload.dependent_task_id)
    try:
        with transaction(db):
            db.add(dep)
            db.flush()
            log_activity(
                db,
                user.id,
                "create",
                "task_dependency",
                dep.id,
                details=f"Task {payload.dependent_task_id} depends on {payload.task_id}",
            )
    except IntegrityError:
        raise ConflictError("This dependency already exists")
    return dependency_out(dep)


@app.delete('/task-dependencies')
def delete_task_dependency(
    task_id: Optional[str] = None,
    dependent_task_id: Optional[str] = None,
    user: CurrentUser = Depends(requires("tasks", "update")),
    db: Session = Depends(get_db),
):
    if not task_id or not dependent_task_id:
        raise ValidationError("task_id and dependent_task_id are required")
    dep = db.scalar(
        select(TaskDependency).where(
            TaskDependency.task_id == task_id, TaskDependency.dependent_task_id == dependent_task_id
        )
    )
    if dep is None:
        raise NotFoundError("Dependency not found")
    with transaction(db):
        db.delete(dep)
        log_activity(db, user.id, "delete", "task_dependency", None, details=f"Removed dependency {task_id} -> {dependent_task_id}")
    return {"message": "Dependency deleted"}


# ----- Documents -----
def check_document_targets(db: Session, project_id: Optional[str], task_id: Optional[str]):
    if project_id:
        get_or_404(db, Project, project_id, "Project")
    if task_id:
        get_or_404(db, Task, task_id, "Task")


def require_document_owner(user: CurrentUser, doc: Document):
    if user.is_admin or doc.uploaded_by_id == user.id:
        return
    if doc.project is not None and can_manage_project(user, doc.project):
        return
    raise Forbidden("You are not allowed to modify this document")


@app.get('/documents')
def list_documents(
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
    user: CurrentUser = Depends(requires("documents", "read")),
    db: Session = Depends(get_db),
):
    stmt = select(Document).options(
        selectinload(Document.project), selectinload(Document.task), selectinload(Document.uploaded_by)
    ).order_by(Document.created_at.desc())
    if project_id:
        stmt = stmt.where(Document.project_id == project_id)
    if task_id:
        stmt = stmt.where(Document.task_id == task_id)
    return [document_out(d) for d in db.scalars(stmt).all()]


@app.post('/documents', status_code=201)
def create_document(payload: DocumentCreate, user: CurrentUser = Depends(requires("documents", "create")), db: Session = Depends(get_db)):
    name = (payload.name or "").strip()
    if not name or not payload.file_url:
        raise ValidationError("Name and file_url are required")
    if not payload.project_id and not payload.task_id:
        raise ValidationError("A project_id or task_id is required")
    check_document_targets(db, payload.project_id, payload.task_id)
    doc = Document(
        name=name,
        description=payload.description,
        file_url=payload.file_url,
        file_type=payload.file_type,
        file_size=payload.file_size,
        project_id=payload.project_id,
        task_id=payload.task_id,
        uploaded_by_id=user.id,
    )
    with transaction(db):
        db.add(doc)
        db.flush()
        log_activity(db, user.id, "create", "document", doc.id, details=f"Added document \"{name}\"")
    return document_out(doc)


@app.post('/documents/upload', status_code=201)
def upload_document(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    project_id: Optional[str] = Form(None),
    task_id: Optional[str] = Form(None),
    user: CurrentUser = Depends(requires("documents", "create")),
    db: Session = Depends(get_db),
    storage: Optional[ObjectStorage] = Depends(get_storage),
):
    data = file.file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File too large (max {config.MAX_UPLOAD_BYTES // (1024 * 1024)} MB)")
    if not data:
        raise ValidationError("File is empty")
    check_document_targets(db, project_id, task_id)
    if storage is None:
        raise InternalError("Object storage is not configured")

    key = object_key(file.filename)
    url = storage.upload(key, io.BytesIO(data), file.content_type)
    doc = Document(
        name=(name or "").strip() or file.filename or key,
        description=description,
        file_url=url,
        storage_key=key,
        file_type=file.content_type,
        file_size=len(data),
        project_id=project_id or None,
        task_id=task_id or None,
        uploaded_by_id=user.id,
    )
    try:
        with transaction(db):
            db.add(doc)
            db.flush()
            log_activity(db, user.id, "upload", "document", doc.id, details=f"Uploaded \"{doc.name}\"", metadata={"size": len(data)})
    except SQLAlchemyError:
        logger.error("Saving uploaded document %s failed, removing stored object", key)
        storage.delete(key)
        raise
    return document_out(doc)


@app.get('/documents/{document_id}')
def get_document(
    document_id: str,
    user: CurrentUser = Depends(requires("documents", "read")),
    db: Session = Depends(get_db),
    storage: Optional[ObjectStorage] = Depends(get_storage),
):
    doc = get_or_404(db, Document, document_id, "Document")
    data = document_out(doc)
    if doc.storage_key and storage is not None:
        data["download_url"] = storage.presigned_url(doc.storage_key)
    return data


@app.put('/documents/{document_id}')
@app.patch('/documents/{document_id}')
def update_document(document_id: str, payload: DocumentPatch, user: CurrentUser = Depends(requires("documents", "update")), db: Session = Depends(get_db)):
    doc = get_or_404(db, Document, document_id, "Document")
    require_document_owner(user, doc)
    changes = patch_changes(payload, required=("name",))
    with transaction(db):
        for key, value in changes.items():
            setattr(doc, key, value)
        log_activity(db, user.id, "update", "document", doc.id, details=f"Updated document \"{doc.name}\"", metadata={"fields": sorted(changes)})
    return document_out(doc)


@app.delete('/documents/{document_id}')
def delete_document(
    document_id: str,
    user: CurrentUser = Depends(requires("documents", "delete")),
    db: Session = Depends(get_db),
    storage: Optional[ObjectStorage] = Depends(get_storage),
):
    doc = get_or_404(db, Document, document_id, "Document")
    require_document_owner(user, doc)
    if doc.storage_key:
        if storage is None:
            raise InternalError("Object storage is not configured")
        storage.delete(doc.storage_key)
    with transaction(db):
        name = doc.name
        db.delete(doc)
        log_activity(db, user.id, "delete", "document", document_id, details=f"Deleted document \"{name}\"")
    return {"message": "Document deleted"}


# ----- Settings & preferences -----
def get_or_create_for_user(db: Session, model, user_id: str):
    row = db.scalar(select(model).where(model.user_id == user_id))
    if row is not None:
        return row
    row = model(user_id=user_id)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        row = db.scalar(select(model).where(model.user_id == user_id))
    return row


@app.get('/settings')
def get_settings(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return settings_out(get_or_create_for_user(db, UserSettings, user.id))


@app.put('/settings')
def update_settings(payload: SettingsUpdate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    changes = patch_changes(payload, required=tuple(SettingsUpdate.model_fields))
    row = get_or_create_for_user(db, UserSettings, user.id)
    with transaction(db):
        for key, value in changes.items():
            setattr(row, key, value)
        log_activity(db, user.id, "update", "user_settings", row.id, details="Settings updated", metadata=changes)
    return settings_out(row)


@app.get('/notification-preferences')
def get_notification_preferences(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return preferences_out(get_or_create_for_user(db, NotificationPreference, user.id))


@app.put('/notification-preferences')
def update_notification_preferences(payload: PreferencesUpdate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    changes = patch_changes(payload, required=tuple(PreferencesUpdate.model_fields))
    row = get_or_create_for_user(db, NotificationPreference, user.id)
    with transaction(db):
        for key, value in changes.items():
            setattr(row, key, value)
        log_activity(db, user.id, "update", "notification_preferences", row.id, metadata=changes)
    return preferences_out(row)


# ----- Roles & permissions -----
@app.get('/permissions')
def list_permissions(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    stmt = select(Permission).order_by(Permission.resource, Permission.action)
    return [permission_out(p) for p in db.scalars(stmt).all()]


@app.post('/permissions', status_code=201)
def create_permission(payload: PermissionCreate, user: CurrentUser = Depends(requires("roles", "manage")), db: Session = Depends(get_db)):
    resource, action = payload.resource.strip(), payload.action.strip()
    perm = Permission(
        name=(payload.name or "").strip() or f"{resource}.{action}",
        resource=resource,
        action=action,
        description=payload.description,
    )
    clash = db.scalar(
        select(Permission.id).where(
            or_(Permission.name == perm.name, (Permission.resource == resource) & (Permission.action == action))
        )
    )
    if clash:
        raise ConflictError("This permission already exists")
    try:
        with transaction(db):
            db.add(perm)
            db.flush()
            log_activity(db, user.id, "create", "permission", perm.id, details=f"Created permission {perm.name}")
    except IntegrityError:
        raise ConflictError("This permission already exists")
    return permission_out(perm)


@app.get('/roles')
def list_roles(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    stmt = select(Role).options(selectinload(Role.role_permissions).selectinload(RolePermission.permission)).order_by(Role.name)
    return [role_out(r) for r in db.scalars(stmt).all()]


@app.get('/role-permissions')
def list_role_permissions(role_id: Optional[str] = None, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    stmt = select(RolePermission).options(selectinload(RolePermission.role), selectinload(RolePermission.permission))
    if role_id:
        stmt = stmt.where(RolePermission.role_id == role_id)
    rows = db.scalars(stmt).all()
    return [role_permission_out(rp) for rp in sorted(rows, key=lambda rp: (rp.role.name, rp.permission.name))]


@app.post('/role-permissions', status_code=201)
def create_role_permission(payload: RolePermissionCreate, user: CurrentUser = Depends(requires("roles", "manage")), db: Session = Depends(get_db)):
    role = get_or_404(db, Role, payload.role_id, "Role")
    perm = get_or_404(db, Permission, payload.permission_id, "Permission")
    exists = db.scalar(
        select(RolePermission.id).where(RolePermission.role_id == role.id, RolePermission.permission_id == perm.id)
    )
    if exists:
        raise ConflictError("This role already has this permission")
    rp = RolePermission(role_id=role.id, permission_id=perm.id)
    try:
        with transaction(db):
            db.add(rp)
            db.flush()
            log_activity(db, user.id, "grant", "role_permission", rp.id, details=f"Granted {perm.name} to {role.name}")
    except IntegrityError:
        raise ConflictError("This role already has this permission")
    return role_permission_out(rp)


@app.delete('/role-permissions/{role_permission_id}')
def delete_role_permission(role_permission_id: str, user: CurrentUser = Depends(requires("roles", "manage")), db: Session = Depends(get_db)):
    rp = get_or_404(db, RolePermission, role_permission_id, "Role permission")
    with transaction(db):
        details = f"Revoked {rp.permission.name} from {rp.role.name}"
        db.delete(rp)
        log_activity(db, user.id, "revoke", "role_permission", role_permission_id, details=details)
    return {"message": "Role permission deleted"}


# ----- Activity & dashboard -----
@app.get('/activity-logs')
def list_activity_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(requires("activity-logs", "read")),
    db: Session = Depends(get_db),
):
    stmt = select(ActivityLog).options(selectinload(ActivityLog.user)).order_by(ActivityLog.created_at.desc()).limit(limit)
    if entity_type:
        stmt = stmt.where(ActivityLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(ActivityLog.entity_id == entity_id)
    if user_id:
        stmt = stmt.where(ActivityLog.user_id == user_id)
    return [activity_out(a) for a in db.scalars(stmt).all()]


def count_by_status(db: Session, column) -> Dict[str, int]:
    return {status: count for status, count in db.execute(select(column, func.count()).group_by(column)).all()}


@app.get('/dashboard/stats')
def dashboard_stats(user: CurrentUser = Depends(requires("dashboard", "read")), db: Session = Depends(get_db)):
    today = date.today()
    recent_projects = project_with_relations().order_by(Project.created_at.desc()).limit(5)
    recent_tasks = task_with_relations().order_by(Task.created_at.desc()).limit(5)
    recent_activity = select(ActivityLog).options(selectinload(ActivityLog.user)).order_by(ActivityLog.created_at.desc()).limit(5)
    if not user.is_admin:
        recent_projects = recent_projects.where(visible_projects_clause(user))
        recent_tasks = recent_tasks.where(visible_tasks_clause(user))
        recent_activity = recent_activity.where(ActivityLog.user_id == user.id)

    def scalar(stmt):
        return lambda s: s.scalar(stmt)

    def rows(stmt, serialize):
        return lambda s: [serialize(r) for r in s.scalars(stmt).all()]

    return run_reads(db.get_bind(), {
        "totalProjects": scalar(select(func.count(Project.id))),
        "totalTasks": scalar(select(func.count(Task.id))),
        "totalUsers": scalar(select(func.count(User.id))),
        "totalDocuments": scalar(select(func.count(Document.id))),
        "tasksByStatus": lambda s: count_by_status(s, Task.status),
        "projectsByStatus": lambda s: count_by_status(s, Project.status),
        "myTasks": scalar(select(func.count()).select_from(task_assignees).where(task_assignees.c.user_id == user.id)),
        "myProjects": scalar(
            select(func.count(Project.id)).where(or_(Project.manager_id == user.id, Project.created_by_id == user.id))
        ),
        "overdueTasks": scalar(
            select(func.count(Task.id)).where(
                Task.due_date < today, Task.status.not_in(CLOSED_TASK_STATUSES + ("REFUSED",))
            )
        ),
        "recentProjects": rows(recent_projects, project_out),
        "recentTasks": rows(recent_tasks, task_out),
        "recentActivity": rows(recent_activity, activity_out),
    })


# ----- Notifications -----
@app.get('/notifications')
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    stmt = select(Notification).where(Notification.user_id == user.id).order_by(Notification.created_at.desc()).limit(limit)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    return [notification_out(n) for n in db.scalars(stmt).all()]


@app.put('/notifications/{notification_id}/read')
def mark_notification_read(notification_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    n = db.get(Notification, notification_id)
    if n is None or n.user_id != user.id:
        raise NotFoundError("Notification not found")
    n.read = True
    db.commit()
    return notification_out(n)


# ----- Reminders & export -----
@app.post('/reminders')
def run_reminders(
    x_cron_secret: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
):
    trusted = bool(config.CRON_SECRET and x_cron_secret and secrets.compare_digest(x_cron_secret, config.CRON_SECRET))
    # the bearer token is only resolved when the cron secret does not match
    if not trusted:
        user = get_current_user(credentials, db)
        ensure_permission(db, user, "reminders", "manage")
    stats = process_reminders(db)
    return {
        "success": True,
        "message": f"Reminders processed for {stats.tasks_processed} task(s)",
        "stats": stats.as_dict(),
    }


@app.post('/export')
def export_data(payload: ExportRequest, user: CurrentUser = Depends(requires("export", "read")), db: Session = Depends(get_db)):
    start = payload.date_range.start if payload.date_range else None
    end = payload.date_range.end if payload.date_range else None
    data = exports.collect(db, payload.types, start, end)
    with transaction(db):
        log_activity(db, user.id, "export", "data", None, details=f"Exported {', '.join(data)} as {payload.format}")
    if payload.format == "csv":
        filename = f"export-{utcnow():%Y%m%d-%H%M%S}.csv"
        return Response(
            content=exports.to_csv(data),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return {"exported_at": utcnow(), "format": "json", "data": data}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
