"""
Request schemas for the project management API

Create models list required fields; *Patch models list every updatable field as
optional and are applied with ``model_dump(exclude_unset=True)`` so only the
fields present in the request body are touched.
"""
import re
from datetime import date
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")

ProjectStatus = Literal['PLANNING', 'IN_PROGRESS', 'ON_HOLD', 'COMPLETED', 'CANCELLED']
StageStatus = Literal['PENDING', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED']
TaskStatus = Literal['TODO', 'IN_PROGRESS', 'IN_REVIEW', 'COMPLETED', 'CANCELLED', 'REFUSED']
TaskPriority = Literal['LOW', 'MEDIUM', 'HIGH', 'URGENT']
ExportType = Literal['projects', 'tasks', 'users', 'documents', 'activity_logs']


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ----- Auth & profile -----
class LoginRequest(Payload):
    email: Optional[str] = None
    password: Optional[str] = None


class RegisterRequest(Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdate(Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


# ----- Users -----
class UserCreate(Payload):
    name: str = Field(..., min_length=1)
    email: str
    password: str = Field(..., min_length=1)
    role: str = Field(..., description="admin | manager | user, or a stored role name")
    phone: Optional[str] = None


class UserPatch(Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None


# ----- Projects & stages -----
class ProjectCreate(Payload):
    title: Optional[str] = None
    description: Optional[str] = None
    status: ProjectStatus = 'PLANNING'
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    due_date: Optional[date] = None
    manager_id: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)


class ProjectPatch(Payload):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    due_date: Optional[date] = None
    manager_id: Optional[str] = None
    member_ids: Optional[List[str]] = None


class StageCreate(Payload):
    name: Optional[str] = None
    project_id: Optional[str] = None
    description: Optional[str] = None
    position: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices('position', 'order'))
    duration: Optional[int] = Field(None, ge=0, description="Planned duration in days")
    status: StageStatus = 'PENDING'
    dependency_ids: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices('dependency_ids', 'dependencyIds', 'dependencies')
    )


class StagePatch(Payload):
    name: Optional[str] = None
    description: Optional[str] = None
    position: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices('position', 'order'))
    duration: Optional[int] = Field(None, ge=0)
    status: Optional[StageStatus] = None
    dependency_ids: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices('dependency_ids', 'dependencyIds', 'dependencies')
    )


# ----- Tasks -----
class TaskCreate(Payload):
    title: Optional[str] = None
    project_id: Optional[str] = None
    description: Optional[str] = None
    status: TaskStatus = 'TODO'
    priority: TaskPriority = 'MEDIUM'
    due_date: Optional[date] = None
    stage_id: Optional[str] = None
    assignee_ids: List[str] = Field(default_factory=list)


class TaskPatch(Payload):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    stage_id: Optional[str] = None
    assignee_ids: Optional[List[str]] = None


class TaskRespondRequest(Payload):
    response: Literal['accepted', 'rejected'] = Field(..., description="Assignee decision")
    reason: Optional[str] = None


class RefuseRequest(Payload):
    # checked after the task and assignee lookups
    reason: Optional[str] = Field(None, description="Why the assignee refuses the task")


class RejectRequest(Payload):
    rejection_reason: Optional[str] = Field(
        None, validation_alias=AliasChoices('rejectionReason', 'rejection_reason', 'reason')
    )


class TaskDependencyCreate(Payload):
    task_id: Optional[str] = None
    dependent_task_id: Optional[str] = None


# ----- Documents -----
class DocumentCreate(Payload):
    name: Optional[str] = None
    file_url: Optional[str] = None
    description: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    project_id: Optional[str] = None
    task_id: Optional[str] = None


class DocumentPatch(Payload):
    name: Optional[str] = None
    description: Optional[str] = None


# ----- Settings & preferences -----
class SettingsUpdate(Payload):
    language: Optional[str] = Field(None, max_length=10)
    timezone: Optional[str] = None
    theme: Optional[Literal['light', 'dark', 'system']] = None
    date_format: Optional[str] = None
    items_per_page: Optional[int] = Field(None, ge=1, le=200)
    font_size: Optional[Literal['small', 'medium', 'large']] = None
    compact_mode: Optional[bool] = None
    notifications_enabled: Optional[bool] = None
    email_notifications: Optional[bool] = None


class PreferencesUpdate(Payload):
    email_task_assigned: Optional[bool] = None
    email_task_updated: Optional[bool] = None
    email_task_due: Optional[bool] = None
    email_stage_completed: Optional[bool] = None
    email_project_created: Optional[bool] = None
    push_notifications: Optional[bool] = None
    daily_summary: Optional[bool] = None


# ----- Access control -----
class PermissionCreate(Payload):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None


class RolePermissionCreate(Payload):
    role_id: str = Field(..., min_length=1)
    permission_id: str = Field(..., min_length=1)


# ----- Export -----
class DateRange(Payload):
    start: Optional[date] = None
    end: Optional[date] = None


class ExportRequest(Payload):
    types: List[ExportType] = Field(default_factory=lambda: ['projects', 'tasks'])
    format: Literal['json', 'csv'] = 'json'
    date_range: Optional[DateRange] = Field(None, validation_alias=AliasChoices('date_range', 'dateRange'))
