"""Task API endpoints."""
import logging
from math import ceil
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import ValidationError as PydanticValidationError

from permit_core import models, schemas
from permit_core.errors import ValidationError
from permit_core.file_storage import IncomingFile
from permit_core.permissions import CAP_TASK_APPROVE, CAP_TASK_WRITE
from permit_core.task_lifecycle import TaskLifecycleManager

from ..dependencies import AuthContext, get_auth_context, get_task_manager, require

logger = logging.getLogger("permit-core.tasks")

router = APIRouter(tags=["tasks"])


# ============================================================================
# Helpers
# ============================================================================


def parse_input(schema, cleared=(), **data):
    """
    Build a request schema from form or query values.

    None values are treated as absent, so optional fields keep their stored
    value on update and required fields report as missing. Names in
    ``cleared`` are passed as explicit nulls.

    Raises:
        ValidationError: If the values do not satisfy the schema
    """
    payload = {key: value for key, value in data.items() if value is not None}
    payload.update((name, None) for name in cleared)
    try:
        return schema(**payload)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        message = f"{field}: {error['msg']}" if field else error["msg"]
        raise ValidationError(message, field=field) from exc


def parse_cleared(clear: Optional[str], schema) -> list[str]:
    """
    Split a comma-separated list of field names to set to null.

    Empty form values arrive as missing, so clearing a field over a form
    needs its name listed here instead.

    Raises:
        ValidationError: If a name is not a field of the schema
    """
    names = [name.strip() for name in (clear or "").split(",") if name.strip()]
    for name in names:
        if name not in schema.model_fields:
            raise ValidationError(f"clear: unknown field '{name}'", field="clear")
    return names


def to_incoming(files: Optional[list[UploadFile]]) -> list[IncomingFile]:
    """Adapt FastAPI uploads to storage uploads, skipping empty file parts."""
    return [
        IncomingFile(filename=upload.filename, file=upload.file, content_type=upload.content_type)
        for upload in files or []
        if upload.filename
    ]


def get_task_filters(
    search: Optional[str] = Query(None, description="Case-insensitive match on code or title"),
    project_id: Optional[int] = Query(None, description="Filter by project"),
    status_id: Optional[int] = Query(None, description="Filter by execution status id"),
    approval_status_id: Optional[int] = Query(None, description="Filter by approval status id"),
    assigned_to: Optional[int] = Query(None, description="Filter by assignee"),
    start_date: Optional[str] = Query(None, description="Created on or after"),
    end_date: Optional[str] = Query(None, description="Created on or before; a date alone covers the whole day"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(10, ge=1, le=100, description="Items per page"),
) -> schemas.TaskFilters:
    """Collect listing filters from query parameters."""
    return parse_input(
        schemas.TaskFilters,
        search=search,
        project_id=project_id,
        status_id=status_id,
        approval_status_id=approval_status_id,
        assigned_to=assigned_to,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )


def to_list_response(tasks: list[models.Task], total: int, filters: schemas.TaskFilters) -> schemas.TaskListResponse:
    """Wrap a page of tasks with pagination metadata."""
    return schemas.TaskListResponse(
        items=[schemas.TaskResponse.model_validate(task) for task in tasks],
        total=total,
        page=filters.page,
        limit=filters.limit,
        total_pages=ceil(total / filters.limit) if total > 0 else 0,
    )


# ============================================================================
# Create / read / update / delete
# ============================================================================


@router.post("/", response_model=schemas.TaskResponse, status_code=201)
def create_task(
    project_id: Optional[int] = Form(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    priority_id: Optional[int] = Form(None),
    assigned_to: Optional[int] = Form(None),
    stack_id: Optional[int] = Form(None),
    due_date: Optional[str] = Form(None),
    files: Optional[list[UploadFile]] = File(None),
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    Create a new task.

    The task receives the next code of its project (e.g. ENG-TASK-0003),
    starts in to-do with approval waiting, and gets two approval slots.

    - **project_id**: Owning project (required)
    - **title**: Task title (required)
    - **priority_id**: Priority reference id (required)
    - **description**, **assigned_to**, **stack_id**, **due_date**: Optional
    - **files**: Creation attachments (pdf, doc, docx, jpg, jpeg, png)
    """
    draft = parse_input(
        schemas.TaskCreate,
        project_id=project_id,
        title=title,
        description=description,
        priority_id=priority_id,
        assigned_to=assigned_to,
        stack_id=stack_id,
        due_date=due_date,
    )
    task = manager.create(draft, auth.tenant_id, auth.user_id, to_incoming(files))
    return schemas.TaskResponse.model_validate(task)


@router.get("/", response_model=schemas.TaskListResponse)
def list_tasks(
    filters: schemas.TaskFilters = Depends(get_task_filters),
    auth: AuthContext = Depends(get_auth_context),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    List approved tasks with filtering and pagination.

    Only tasks whose approval status is approved are returned; use
    /task-requests for tasks still moving through approval.
    Tasks are ordered newest first.
    """
    tasks, total = manager.list_tasks(auth.tenant_id, filters)
    return to_list_response(tasks, total, filters)


@router.get("/code/{code}", response_model=schemas.TaskResponse)
def get_task_by_code(
    code: str,
    auth: AuthContext = Depends(get_auth_context),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Get a task by its code (e.g. ENG-TASK-0003)."""
    return schemas.TaskResponse.model_validate(manager.get_by_code(code, auth.tenant_id))


@router.get("/{task_id}", response_model=schemas.TaskResponse)
def get_task(
    task_id: int,
    auth: AuthContext = Depends(get_auth_context),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Get a task with its project, attachments and approval slots."""
    return schemas.TaskResponse.model_validate(manager.get(task_id, auth.tenant_id))


@router.put("/{task_id}", response_model=schemas.TaskResponse)
def update_task(
    task_id: int,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    description_before: Optional[str] = Form(None),
    description_after: Optional[str] = Form(None),
    project_id: Optional[int] = Form(None),
    priority_id: Optional[int] = Form(None),
    assigned_to: Optional[int] = Form(None),
    stack_id: Optional[int] = Form(None),
    due_date: Optional[str] = Form(None),
    clear: Optional[str] = Form(None, description="Comma-separated fields to set to null"),
    files: Optional[list[UploadFile]] = File(None),
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    Update a task.

    Only submitted fields are changed. Optional fields such as assigned_to,
    stack_id or due_date are cleared by naming them in ``clear``; title,
    project_id and priority_id cannot be cleared. Uploaded files are added as
    creation attachments. The task code never changes.
    """
    values = {
        "title": title,
        "description": description,
        "description_before": description_before,
        "description_after": description_after,
        "project_id": project_id,
        "priority_id": priority_id,
        "assigned_to": assigned_to,
        "stack_id": stack_id,
        "due_date": due_date,
    }
    cleared = parse_cleared(clear, schemas.TaskUpdate)
    for name in cleared:
        if values[name] is not None:
            raise ValidationError(f"{name}: cannot be both set and cleared", field=name)
    patch = parse_input(schemas.TaskUpdate, cleared=cleared, **values)
    task = manager.update(task_id, patch, auth.tenant_id, auth.user_id, to_incoming(files))
    return schemas.TaskResponse.model_validate(task)


@router.delete("/{task_id}", response_model=schemas.MessageResponse)
def delete_task(
    task_id: int,
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Soft delete a task. It disappears from reads and listings."""
    manager.delete(task_id, auth.tenant_id)
    return schemas.MessageResponse(message=f"Task {task_id} deleted")


# ============================================================================
# Execution state
# ============================================================================


@router.post("/{task_id}/change-status", response_model=schemas.TaskResponse)
def change_status(
    task_id: int,
    body: schemas.TaskChangeStatus,
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Set the execution status. Any status may follow any other."""
    task = manager.change_execution_status(task_id, body.status_id, auth.tenant_id, auth.user_id)
    return schemas.TaskResponse.model_validate(task)


@router.post("/{task_id}/change-type", response_model=schemas.TaskResponse)
def change_type(
    task_id: int,
    body: schemas.TaskChangeType,
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Set the task type."""
    task = manager.change_type(task_id, body.type_id, auth.tenant_id, auth.user_id)
    return schemas.TaskResponse.model_validate(task)


@router.post("/{task_id}/in-review", response_model=schemas.TaskResponse)
def enter_review(
    task_id: int,
    description_before: Optional[str] = Form(None),
    description_after: Optional[str] = Form(None),
    files: Optional[list[UploadFile]] = File(None),
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    Submit a task for review with before/after notes and evidence files.

    The notes, the files and the move to in-review succeed or fail together.
    """
    task = manager.enter_review(
        task_id,
        description_before,
        description_after,
        auth.tenant_id,
        auth.user_id,
        to_incoming(files),
    )
    return schemas.TaskResponse.model_validate(task)


@router.post("/{task_id}/set-reason", response_model=schemas.TaskResponse)
def set_reason(
    task_id: int,
    body: schemas.TaskReason,
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Record why a task was sent back. The execution status is unchanged."""
    task = manager.set_reason(task_id, body.reason, auth.tenant_id, auth.user_id)
    return schemas.TaskResponse.model_validate(task)


@router.post("/{task_id}/set-revision", response_model=schemas.TaskResponse)
def set_revision(
    task_id: int,
    revision: Optional[str] = Form(None),
    files: Optional[list[UploadFile]] = File(None),
    auth: AuthContext = Depends(require(CAP_TASK_WRITE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """Send a task to revision with revision notes and files."""
    task = manager.set_revision(task_id, revision, auth.tenant_id, auth.user_id, to_incoming(files))
    return schemas.TaskResponse.model_validate(task)


# ============================================================================
# Approval
# ============================================================================


@router.post("/{task_id}/approvals/{approval_id}/approve", response_model=schemas.TaskResponse)
def approve(
    task_id: int,
    approval_id: int,
    body: Optional[schemas.ApprovalDecision] = None,
    auth: AuthContext = Depends(require(CAP_TASK_APPROVE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    Approve one approval slot of a task.

    Approving slot 1 moves the task to pending second approval; approving
    slot 2 approves the task. A slot that is no longer waiting returns 409.
    """
    note = body.note if body else None
    task = manager.approve_slot(task_id, approval_id, auth.tenant_id, auth.user_id, note)
    return schemas.TaskResponse.model_validate(task)


@router.post("/{task_id}/approvals/{approval_id}/reject", response_model=schemas.TaskResponse)
def reject(
    task_id: int,
    approval_id: int,
    body: Optional[schemas.ApprovalDecision] = None,
    auth: AuthContext = Depends(require(CAP_TASK_APPROVE)),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    Reject one approval slot of a task.

    Rejecting slot 1 also rejects slot 2. Either rejection rejects the task.
    """
    note = body.note if body else None
    task = manager.reject_slot(task_id, approval_id, auth.tenant_id, auth.user_id, note)
    return schemas.TaskResponse.model_validate(task)
