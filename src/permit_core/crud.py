"""Persistence operations for tasks, approval slots and attachments.

Every function here flushes but never commits: the caller owns the
transaction, normally through ``transaction()``. Reads and writes on tasks
are always scoped by tenant and skip soft-deleted rows, so an id from another
tenant resolves exactly like a missing one.
"""
import enum
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .errors import NotFoundError, StorageError, TaskEngineError, ValidationError
from .file_storage import StoredFile

logger = logging.getLogger("permit-core.crud")

# Fields that are fixed once a task row exists
IMMUTABLE_TASK_FIELDS = frozenset({"id", "tenant_id", "code", "created_by", "created_at"})


class TaskListMode(str, enum.Enum):
    """Which population of tasks a listing covers."""

    TASKS = "tasks"          # Approved tasks only; the caller's approval filter is ignored
    REQUESTS = "requests"    # Every approval state; approver inbox


@contextmanager
def transaction(db: Session, passthrough_integrity: bool = False) -> Iterator[Session]:
    """
    Run a unit of work and commit it, rolling back on any failure.

    Args:
        db: Database session
        passthrough_integrity: Re-raise IntegrityError as-is so the caller can
            retry; otherwise it is reported as a StorageError

    Raises:
        StorageError: If the database fails
    """
    try:
        yield db
        db.commit()
    except TaskEngineError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        if passthrough_integrity:
            raise
        logger.error(f"Integrity violation: {exc.orig}", exc_info=True)
        raise StorageError(f"Database integrity violation: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Database error: {exc}", exc_info=True)
        raise StorageError(f"Database error: {exc}") from exc
    except Exception:
        db.rollback()
        raise


@contextmanager
def reading(db: Session) -> Iterator[Session]:
    """
    Run read-only queries, reporting database failures as StorageError.

    Raises:
        StorageError: If the database fails
    """
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Database error: {exc}", exc_info=True)
        raise StorageError(f"Database error: {exc}") from exc


def _task_query(db: Session):
    return db.query(models.Task).options(
        selectinload(models.Task.project),
        selectinload(models.Task.task_files),
        selectinload(models.Task.approval_tasks),
    )


# ============================================================================
# Projects
# ============================================================================


def get_project(db: Session, project_id: int, tenant_id: int) -> Optional[models.Project]:
    """Get a non-deleted project visible to the tenant."""
    return db.query(models.Project).filter(
        models.Project.id == project_id,
        models.Project.tenant_id == tenant_id,
        models.Project.deleted_at.is_(None),
    ).first()


def count_project_tasks(db: Session, project_id: int, tenant_id: int) -> int:
    """Count every task row of a project, soft-deleted ones included."""
    return db.query(models.Task).filter(
        models.Task.project_id == project_id,
        models.Task.tenant_id == tenant_id,
    ).count()


def code_exists(db: Session, tenant_id: int, code: str) -> bool:
    """Check whether a task code is taken in the tenant, soft-deleted rows included."""
    return db.query(models.Task.id).filter(
        models.Task.tenant_id == tenant_id,
        models.Task.code == code,
    ).first() is not None


# ============================================================================
# Tasks
# ============================================================================


def create_task_with_approval_slots(db: Session, task: models.Task) -> models.Task:
    """
    Add a task together with its two waiting approval slots.

    Both rows are flushed in the same transaction, so either the task and
    both slots exist after commit or none of them do.

    Args:
        db: Database session
        task: Unsaved task

    Returns:
        The flushed task (id assigned)
    """
    task.approval_tasks = [
        models.ApprovalTask(
            sequence=sequence,
            approval_status_id=models.ApprovalStatus.WAITING,
            active=True,
        )
        for sequence in models.APPROVAL_SEQUENCES
    ]
    db.add(task)
    db.flush()
    return task


def get_task(db: Session, task_id: int, tenant_id: int) -> models.Task:
    """
    Get a non-deleted task by id within a tenant.

    Raises:
        NotFoundError: If the task does not exist, is deleted, or belongs to another tenant
    """
    task = _task_query(db).filter(
        models.Task.id == task_id,
        models.Task.tenant_id == tenant_id,
        models.Task.deleted_at.is_(None),
    ).first()
    if not task:
        raise NotFoundError("Task", task_id)
    return task


def get_task_by_code(db: Session, code: str, tenant_id: int) -> models.Task:
    """
    Get a non-deleted task by its code within a tenant.

    Raises:
        NotFoundError: If no visible task carries the code
    """
    task = _task_query(db).filter(
        models.Task.code == code,
        models.Task.tenant_id == tenant_id,
        models.Task.deleted_at.is_(None),
    ).first()
    if not task:
        raise NotFoundError("Task", code)
    return task


def get_tasks(
    db: Session,
    tenant_id: int,
    filters: schemas.TaskFilters,
    mode: TaskListMode = TaskListMode.TASKS,
) -> tuple[list[models.Task], int]:
    """
    Get tasks with filtering and pagination.

    Args:
        db: Database session
        tenant_id: Tenant scope
        filters: Search, field filters and page/limit
        mode: TASKS forces approval status Approved; REQUESTS applies the
            caller's approval status filter, if any

    Returns:
        Tuple of (tasks, total_count), newest first
    """
    query = _task_query(db).filter(
        models.Task.tenant_id == tenant_id,
        models.Task.deleted_at.is_(None),
    )

    if filters.search:
        pattern = f"%{filters.search}%"
        query = query.filter(or_(models.Task.code.ilike(pattern), models.Task.title.ilike(pattern)))

    if filters.project_id:
        query = query.filter(models.Task.project_id == filters.project_id)

    if filters.status_id is not None:
        query = query.filter(models.Task.status_id == filters.status_id)

    if mode == TaskListMode.TASKS:
        query = query.filter(models.Task.approval_status_id == models.ApprovalStatus.APPROVED)
    elif filters.approval_status_id is not None:
        query = query.filter(models.Task.approval_status_id == filters.approval_status_id)

    if filters.assigned_to:
        query = query.filter(models.Task.assigned_to == filters.assigned_to)

    if filters.start_date:
        query = query.filter(models.Task.created_at >= filters.start_date)

    if filters.end_date:
        query = query.filter(models.Task.created_at <= filters.end_date)

    total = query.count()

    tasks = query.order_by(
        models.Task.created_at.desc(),
        models.Task.id.desc(),
    ).offset((filters.page - 1) * filters.limit).limit(filters.limit).all()

    return tasks, total


def update_task_fields(db: Session, task: models.Task, fields: dict) -> models.Task:
    """
    Write only the supplied fields of a task.

    Fields absent from ``fields`` keep their stored value; a key present with
    None clears the column.

    Raises:
        ValidationError: If a field is immutable or unknown
    """
    for name in fields:
        if name in IMMUTABLE_TASK_FIELDS:
            raise ValidationError(f"Field '{name}' cannot be changed", field=name)
        if name not in models.Task.__table__.columns:
            raise ValidationError(f"Unknown task field '{name}'", field=name)

    for name, value in fields.items():
        setattr(task, name, value)
    task.updated_at = models.utcnow()
    db.flush()
    return task


def soft_delete_task(db: Session, task_id: int, tenant_id: int) -> models.Task:
    """
    Mark a task deleted. Its approval slots and attachments stay in place.

    Raises:
        NotFoundError: If the task is not visible to the tenant
    """
    task = get_task(db, task_id, tenant_id)
    task.deleted_at = models.utcnow()
    db.flush()
    return task


# ============================================================================
# Approval slots
# ============================================================================


def list_approval_slots(db: Session, task_id: int) -> list[models.ApprovalTask]:
    """Get the approval slots of a task ordered by sequence."""
    return db.query(models.ApprovalTask).filter(
        models.ApprovalTask.task_id == task_id
    ).order_by(models.ApprovalTask.sequence.asc()).all()


def get_approval_slot(db: Session, task_id: int, sequence: int) -> models.ApprovalTask:
    """
    Get the approval slot of a task at a given sequence.

    Raises:
        NotFoundError: If the task has no slot at that sequence
    """
    slot = db.query(models.ApprovalTask).filter(
        models.ApprovalTask.task_id == task_id,
        models.ApprovalTask.sequence == sequence,
    ).first()
    if not slot:
        raise NotFoundError("Approval slot", f"{task_id}/{sequence}")
    return slot


def get_approval_slot_by_id(db: Session, task_id: int, slot_id: int) -> models.ApprovalTask:
    """
    Get an approval slot by id, checking it belongs to the task.

    Raises:
        NotFoundError: If the slot does not exist or belongs to another task
    """
    slot = db.query(models.ApprovalTask).filter(
        models.ApprovalTask.id == slot_id,
        models.ApprovalTask.task_id == task_id,
    ).first()
    if not slot:
        raise NotFoundError("Approval slot", slot_id)
    return slot


def resolve_approval_slot(
    db: Session,
    slot: models.ApprovalTask,
    status: models.ApprovalStatus,
    approved_by: int,
    note: Optional[str],
    approval_date: datetime,
    only_if_waiting: bool = True,
) -> bool:
    """
    Record an approval outcome on a slot.

    With ``only_if_waiting`` the write is a compare-and-swap that only
    matches a slot still waiting, so two concurrent resolutions of the same
    slot cannot both succeed.

    Returns:
        True if the slot was written, False if it was no longer waiting
    """
    stmt = update(models.ApprovalTask).where(models.ApprovalTask.id == slot.id)
    if only_if_waiting:
        stmt = stmt.where(models.ApprovalTask.approval_status_id == models.ApprovalStatus.WAITING)
    stmt = stmt.values(
        approval_status_id=status,
        approved_by=approved_by,
        approval_date=approval_date,
        note=note,
        updated_at=models.utcnow(),
    ).execution_options(synchronize_session=False)

    result = db.execute(stmt)
    db.expire(slot)
    return result.rowcount == 1


# ============================================================================
# Attachments
# ============================================================================


def create_attachments(
    db: Session,
    task_id: int,
    files: Iterable[StoredFile],
    category: models.AttachmentCategory,
) -> list[models.TaskFile]:
    """Record metadata rows for files already written to storage."""
    rows = [
        models.TaskFile(
            task_id=task_id,
            file_name=stored.file_name,
            file_path=stored.path,
            file_size=stored.size,
            file_type=stored.content_type,
            attachment_category=category,
            active=True,
        )
        for stored in files
    ]
    if not rows:
        return rows
    db.add_all(rows)
    db.flush()
    return rows
