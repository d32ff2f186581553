"""SQLAlchemy database models."""
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    BigInteger,
    SmallInteger,
    DateTime,
    ForeignKey,
    CheckConstraint,
    Boolean,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

# Base class for all models
Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Reference ids
#
# Statuses, approval outcomes and attachment categories are rows in the
# shared "references" lookup table. The enums carry those row ids so stored
# values stay joinable with the lookup table.
# =============================================================================


class TaskStatus(int, enum.Enum):
    """Execution status of a task."""

    TODO = 1
    ON_HOLD = 2
    ON_PROGRESS = 3
    DONE = 4
    IN_REVIEW = 37
    REVISION = 39


class ApprovalStatus(int, enum.Enum):
    """Outcome of an approval slot, or the aggregate outcome of a task."""

    WAITING = 20
    REJECTED = 21
    APPROVED = 22
    PENDING_SECOND_APPROVAL = 23  # Slot-level values never use this one


class AttachmentCategory(int, enum.Enum):
    """Why a file was attached to a task."""

    CREATION = 30
    REVIEW = 31  # Before/after evidence uploaded when entering review
    REVISION = 38


APPROVAL_SEQUENCES = (1, 2)


class IntEnumType(TypeDecorator):
    """Stores an int-valued enum as a plain integer column."""

    impl = Integer
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_class(value)


class Project(Base):
    """
    Project a task belongs to.

    Only the fields the task engine reads are mapped here; projects are
    managed by the reference CRUD layer.
    """

    __tablename__ = "projects"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    code = Column(String(20), nullable=False)  # Short prefix for task codes, e.g. ENG
    name = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True, index=True)

    tasks = relationship("Task", back_populates="project")

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),
    )

    def __repr__(self) -> str:
        return f"<Project {self.code}: {self.name}>"


class TaskCodeSequence(Base):
    """
    Next available task number per tenant + project.

    Read under a row lock while generating a code so concurrent creations for
    the same project never hand out the same number.
    """

    __tablename__ = "task_code_sequences"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False)
    project_id = Column(
        ID_TYPE,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    next_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "project_id", name="uq_task_code_sequences_tenant_project"),
        CheckConstraint("next_number > 0", name="chk_task_code_next_number_positive"),
    )

    def __repr__(self) -> str:
        return f"<TaskCodeSequence {self.tenant_id}:{self.project_id} next={self.next_number}>"


class Task(Base):
    """
    Unit of trackable work belonging to a project.

    A task carries two independent states: its execution status (where the
    work is) and its approval status (the aggregate of its two approval
    slots). A non-deleted task always owns exactly two approval slots.
    """

    __tablename__ = "tasks"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, nullable=False, index=True)
    project_id = Column(ID_TYPE, ForeignKey("projects.id"), nullable=False, index=True)
    code = Column(String(50), nullable=False)

    # Content
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    description_before = Column(Text, nullable=True)
    description_after = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    revision = Column(Text, nullable=True)

    # Classification (ids into the external references table)
    priority_id = Column(BigInteger, nullable=False, index=True)
    type_id = Column(BigInteger, nullable=True, index=True)
    stack_id = Column(BigInteger, nullable=True, index=True)

    # Assignment and audit actors
    assigned_to = Column(BigInteger, nullable=True, index=True)
    created_by = Column(BigInteger, nullable=False, index=True)
    updated_by = Column(BigInteger, nullable=True)
    approved_by = Column(BigInteger, nullable=True)
    completed_by = Column(BigInteger, nullable=True)
    done_by = Column(BigInteger, nullable=True)

    # Execution state
    status_id = Column(IntEnumType(TaskStatus), nullable=False, default=TaskStatus.TODO, index=True)
    active = Column(Boolean, nullable=False, default=True)

    # Approval state
    approval_status_id = Column(
        IntEnumType(ApprovalStatus),
        nullable=False,
        default=ApprovalStatus.WAITING,
        index=True,
    )
    approval_date = Column(DateTime, nullable=True)

    # Lifecycle timestamps
    start_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)
    done_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True, index=True)

    # Relationships
    project = relationship("Project", back_populates="tasks")
    task_files = relationship(
        "TaskFile",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TaskFile.id",
    )
    approval_tasks = relationship(
        "ApprovalTask",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="ApprovalTask.sequence",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_tasks_tenant_code"),
    )

    def __repr__(self) -> str:
        return f"<Task {self.code}: {self.title[:30]}>"


class ApprovalTask(Base):
    """One of the two sequential sign-off slots of a task."""

    __tablename__ = "approval_tasks"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    task_id = Column(
        ID_TYPE,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(SmallInteger, nullable=False)
    approved_by = Column(BigInteger, nullable=True, index=True)
    approval_status_id = Column(
        IntEnumType(ApprovalStatus),
        nullable=False,
        default=ApprovalStatus.WAITING,
        index=True,
    )
    approval_date = Column(DateTime, nullable=True)
    note = Column(String(500), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    task = relationship("Task", back_populates="approval_tasks")

    __table_args__ = (
        UniqueConstraint("task_id", "sequence", name="uq_approval_tasks_task_sequence"),
        CheckConstraint("sequence IN (1, 2)", name="chk_approval_tasks_sequence"),
    )

    @property
    def is_waiting(self) -> bool:
        return self.approval_status_id == ApprovalStatus.WAITING

    def __repr__(self) -> str:
        return f"<ApprovalTask task={self.task_id} seq={self.sequence} {self.approval_status_id.name}>"


class TaskFile(Base):
    """Metadata of a file attached to a task. The bytes live in file storage."""

    __tablename__ = "task_files"

    id = Column(ID_TYPE, primary_key=True, autoincrement=True)
    task_id = Column(
        ID_TYPE,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=True)
    file_type = Column(String(100), nullable=True)  # MIME type
    attachment_category = Column(IntEnumType(AttachmentCategory), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    task = relationship("Task", back_populates="task_files")

    def __repr__(self) -> str:
        return f"<TaskFile {self.file_name} ({self.attachment_category.name.lower()})>"
