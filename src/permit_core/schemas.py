"""Pydantic schemas for request/response validation."""
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from .models import TaskStatus, ApprovalStatus, AttachmentCategory


# =============================================================================
# Task requests
# =============================================================================


class TaskCreate(BaseModel):
    """Schema for creating a new task.

    The task code, execution status (to-do) and approval status (waiting) are
    assigned by the engine and cannot be supplied.
    """

    project_id: int = Field(..., gt=0, description="Owning project id")
    title: str = Field(..., min_length=1, max_length=255, description="Task title")
    description: Optional[str] = Field(None, description="Task description")
    priority_id: int = Field(..., gt=0, description="Priority reference id")
    assigned_to: Optional[int] = Field(None, description="Assignee user id")
    stack_id: Optional[int] = Field(None, description="Stack reference id")
    due_date: Optional[datetime] = Field(None, description="Due date (YYYY-MM-DD or ISO 8601)")


class TaskUpdate(BaseModel):
    """Schema for updating a task.

    Only fields present in the request are written; omitted fields keep their
    stored value. Required fields may not be set to null.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    description_before: Optional[str] = None
    description_after: Optional[str] = None
    project_id: Optional[int] = Field(None, gt=0)
    priority_id: Optional[int] = Field(None, gt=0)
    assigned_to: Optional[int] = None
    stack_id: Optional[int] = None
    due_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _required_fields_not_null(self):
        for name in ("title", "project_id", "priority_id"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class TaskChangeStatus(BaseModel):
    """Schema for changing a task's execution status."""

    status_id: TaskStatus = Field(..., description="Target execution status id")


class TaskChangeType(BaseModel):
    """Schema for changing a task's type."""

    type_id: int = Field(..., gt=0, description="Type reference id")


class TaskInReview(BaseModel):
    """Schema for moving a task into review."""

    description_before: Optional[str] = None
    description_after: Optional[str] = None


class TaskReason(BaseModel):
    """Schema for recording why a task was sent back."""

    reason: str = Field(..., min_length=1)


class TaskRevision(BaseModel):
    """Schema for starting a correction cycle."""

    revision: Optional[str] = None


class ApprovalDecision(BaseModel):
    """Schema for approving or rejecting an approval slot."""

    note: Optional[str] = Field(None, max_length=500)


class TaskFilters(BaseModel):
    """Filters and pagination for task listings."""

    search: Optional[str] = Field(None, description="Case-insensitive match on code or title")
    project_id: Optional[int] = None
    status_id: Optional[TaskStatus] = None
    approval_status_id: Optional[ApprovalStatus] = None
    assigned_to: Optional[int] = None
    start_date: Optional[datetime] = Field(None, description="Created on or after")
    end_date: Optional[datetime] = Field(None, description="Created on or before")
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)

    @field_validator("end_date", mode="before")
    @classmethod
    def _date_only_end_covers_whole_day(cls, value):
        if isinstance(value, str) and len(value) == 10:
            value = date.fromisoformat(value)
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime.combine(value, time.max)
        return value


# =============================================================================
# Task responses
# =============================================================================


class ProjectSummary(BaseModel):
    """Project fields embedded in task responses."""

    id: int
    code: str
    name: str

    model_config = ConfigDict(from_attributes=True)


class TaskFileResponse(BaseModel):
    """Schema for task attachment metadata."""

    id: int
    task_id: int
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    attachment_category: AttachmentCategory
    active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ApprovalTaskResponse(BaseModel):
    """Schema for one approval slot."""

    id: int
    task_id: int
    sequence: int
    approved_by: Optional[int] = None
    approval_status_id: ApprovalStatus
    approval_date: Optional[datetime] = None
    note: Optional[str] = None
    active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class TaskResponse(BaseModel):
    """Schema for full task response."""

    id: int
    tenant_id: int
    project_id: int
    code: str
    title: str
    description: Optional[str] = None
    description_before: Optional[str] = None
    description_after: Optional[str] = None
    reason: Optional[str] = None
    revision: Optional[str] = None
    # Classification
    priority_id: int
    type_id: Optional[int] = None
    stack_id: Optional[int] = None
    # Actors
    assigned_to: Optional[int] = None
    created_by: int
    updated_by: Optional[int] = None
    approved_by: Optional[int] = None
    completed_by: Optional[int] = None
    done_by: Optional[int] = None
    # States
    status_id: TaskStatus
    active: bool
    approval_status_id: ApprovalStatus
    approval_date: Optional[datetime] = None
    # Timestamps
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    done_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    # Children
    project: Optional[ProjectSummary] = None
    task_files: list[TaskFileResponse] = Field(default_factory=list)
    approval_tasks: list[ApprovalTaskResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class TaskListResponse(BaseModel):
    """Schema for paginated task list."""

    items: list[TaskResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class MessageResponse(BaseModel):
    """Acknowledgement for operations that do not return a task."""

    message: str
