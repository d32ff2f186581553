"""Task lifecycle operations.

``TaskLifecycleManager`` is the entry point the API layer calls. Each public
method is one unit of work: it writes any uploaded files first, then performs
all database writes in a single transaction. If the transaction fails the
files it stored are deleted again, so a failed operation leaves neither rows
nor orphaned files behind.
"""
import logging
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import approval_sequencer, code_generator, crud, models, schemas
from .config import Settings
from .errors import ConflictError, NotFoundError, StorageError, ValidationError
from .file_storage import IncomingFile, LocalFileStorage, StoredFile
from .models import AttachmentCategory, TaskStatus

logger = logging.getLogger("permit-core.task_lifecycle")


class TaskLifecycleManager:
    """Creates, edits, moves and approves tasks for one database session."""

    def __init__(self, db: Session, storage: LocalFileStorage, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _store_files(
        self,
        attachments: Sequence[IncomingFile],
        category: AttachmentCategory,
    ) -> list[StoredFile]:
        """Write every upload, or none: a failure removes files already written."""
        stored: list[StoredFile] = []
        try:
            for upload in attachments:
                stored.append(self.storage.save(upload, category))
        except Exception:
            self._discard_files(stored)
            raise
        return stored

    def _discard_files(self, stored: Sequence[StoredFile]) -> None:
        for item in stored:
            self.storage.delete(item.path)
        if stored:
            logger.info(f"Removed {len(stored)} stored file(s) after a failed operation")

    def _run(self, stored: Sequence[StoredFile], work):
        """Run ``work`` in one transaction, deleting ``stored`` files if it fails."""
        try:
            with crud.transaction(self.db):
                return work()
        except Exception:
            self._discard_files(stored)
            raise

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_draft(draft: schemas.TaskCreate) -> None:
        if not draft.project_id:
            raise ValidationError("Project is required", field="project_id")
        if not draft.title or not draft.title.strip():
            raise ValidationError("Title is required", field="title")
        if not draft.priority_id:
            raise ValidationError("Priority is required", field="priority_id")

    def _ensure_project(self, project_id: int, tenant_id: int) -> models.Project:
        project = crud.get_project(self.db, project_id, tenant_id)
        if not project:
            raise NotFoundError("Project", project_id)
        return project

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    def create(
        self,
        draft: schemas.TaskCreate,
        tenant_id: int,
        actor_id: int,
        attachments: Sequence[IncomingFile] = (),
    ) -> models.Task:
        """
        Create a task with a generated code, two waiting approval slots and
        its creation attachments.

        A task code collision at insert time rolls the whole attempt back and
        retries with a fresh code, up to ``code_generation_max_retries`` times.

        Args:
            draft: Validated task fields
            tenant_id: Tenant the task belongs to
            actor_id: Creating user
            attachments: Files filed under the creation category

        Returns:
            Created task

        Raises:
            ValidationError: If project, title or priority is missing
            NotFoundError: If the project is not visible to the tenant
            AttachmentError: If an upload is rejected or cannot be stored
            ConflictError: If no unique code could be allocated
        """
        try:
            self._validate_draft(draft)
        except ValidationError as exc:
            logger.warning(f"Rejected task draft: {exc.message}")
            raise

        stored = self._store_files(attachments, AttachmentCategory.CREATION)
        try:
            task = self._insert_with_unique_code(draft, tenant_id, actor_id, stored)
        except Exception:
            self._discard_files(stored)
            raise

        logger.info(f"Created task {task.code} (id={task.id}) in project {task.project_id} by user {actor_id}")
        return task

    def _insert_with_unique_code(
        self,
        draft: schemas.TaskCreate,
        tenant_id: int,
        actor_id: int,
        stored: Sequence[StoredFile],
    ) -> models.Task:
        attempts = self.settings.code_generation_max_retries
        for attempt in range(1, attempts + 1):
            try:
                with crud.transaction(self.db, passthrough_integrity=True):
                    code = code_generator.generate_code(self.db, draft.project_id, tenant_id)
                    task = models.Task(
                        tenant_id=tenant_id,
                        project_id=draft.project_id,
                        code=code,
                        title=draft.title.strip(),
                        description=draft.description,
                        priority_id=draft.priority_id,
                        assigned_to=draft.assigned_to,
                        stack_id=draft.stack_id,
                        due_date=draft.due_date,
                        status_id=TaskStatus.TODO,
                        approval_status_id=models.ApprovalStatus.WAITING,
                        created_by=actor_id,
                        active=True,
                    )
                    crud.create_task_with_approval_slots(self.db, task)
                    crud.create_attachments(self.db, task.id, stored, AttachmentCategory.CREATION)
                return task
            except IntegrityError as exc:
                if not code_generator.is_code_collision(exc):
                    logger.error(f"Integrity violation creating task: {exc.orig}", exc_info=True)
                    raise StorageError(f"Database integrity violation: {exc.orig}") from exc
                logger.warning(f"Task code collision on attempt {attempt}/{attempts}, retrying")

        raise ConflictError(
            f"Could not allocate a unique task code for project {draft.project_id} "
            f"after {attempts} attempts"
        )

    def update(
        self,
        task_id: int,
        patch: schemas.TaskUpdate,
        tenant_id: int,
        actor_id: int,
        attachments: Sequence[IncomingFile] = (),
    ) -> models.Task:
        """
        Update the editable fields of a task.

        Only fields set on ``patch`` are written. The task code never changes,
        even when the task moves to another project.

        Raises:
            NotFoundError: If the task or a new project is not visible
            ValidationError: If the title is blank
        """
        fields = patch.model_dump(exclude_unset=True)
        if "title" in fields:
            if not fields["title"] or not fields["title"].strip():
                raise ValidationError("Title is required", field="title")
            fields["title"] = fields["title"].strip()

        stored = self._store_files(attachments, AttachmentCategory.CREATION)

        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            if "project_id" in fields and fields["project_id"] != task.project_id:
                self._ensure_project(fields["project_id"], tenant_id)
            crud.update_task_fields(self.db, task, {**fields, "updated_by": actor_id})
            crud.create_attachments(self.db, task.id, stored, AttachmentCategory.CREATION)
            return task

        task = self._run(stored, work)
        logger.info(f"Updated task {task.code}: {', '.join(sorted(fields)) or 'no fields'}")
        return task

    def delete(self, task_id: int, tenant_id: int) -> None:
        """
        Soft delete a task. Its approval slots and attachments are kept.

        Raises:
            NotFoundError: If the task is not visible to the tenant
        """
        task = self._run((), lambda: crud.soft_delete_task(self.db, task_id, tenant_id))
        logger.info(f"Deleted task {task.code} (id={task.id})")

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def change_execution_status(
        self,
        task_id: int,
        status: TaskStatus,
        tenant_id: int,
        actor_id: int,
    ) -> models.Task:
        """
        Set the execution status of a task.

        Any status may follow any other. Moving to done records who finished
        the task and when; moving to in-progress records the start date the
        first time.
        """
        status = TaskStatus(status)

        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            now = models.utcnow()
            fields = {"status_id": status, "updated_by": actor_id}
            if status == TaskStatus.DONE:
                fields["done_by"] = actor_id
                fields["done_at"] = now
            elif status == TaskStatus.ON_PROGRESS and task.start_date is None:
                fields["start_date"] = now
            return crud.update_task_fields(self.db, task, fields)

        task = self._run((), work)
        logger.info(f"Task {task.code} execution status set to {status.name.lower()} by user {actor_id}")
        return task

    def change_type(self, task_id: int, type_id: int, tenant_id: int, actor_id: int) -> models.Task:
        """Set the type of a task."""
        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            return crud.update_task_fields(self.db, task, {"type_id": type_id, "updated_by": actor_id})

        task = self._run((), work)
        logger.info(f"Task {task.code} type set to {type_id}")
        return task

    def enter_review(
        self,
        task_id: int,
        description_before: Optional[str],
        description_after: Optional[str],
        tenant_id: int,
        actor_id: int,
        attachments: Sequence[IncomingFile] = (),
    ) -> models.Task:
        """
        Submit work for review.

        The before/after narrative, the review evidence files and the move to
        in-review are committed together.
        """
        stored = self._store_files(attachments, AttachmentCategory.REVIEW)

        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            crud.update_task_fields(self.db, task, {
                "description_before": description_before,
                "description_after": description_after,
                "status_id": TaskStatus.IN_REVIEW,
                "updated_by": actor_id,
            })
            crud.create_attachments(self.db, task.id, stored, AttachmentCategory.REVIEW)
            return task

        task = self._run(stored, work)
        logger.info(f"Task {task.code} entered review with {len(stored)} file(s)")
        return task

    def set_reason(self, task_id: int, reason: str, tenant_id: int, actor_id: int) -> models.Task:
        """Record why a task was sent back. The execution status is unchanged."""
        if not reason or not reason.strip():
            raise ValidationError("Reason is required", field="reason")

        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            return crud.update_task_fields(self.db, task, {"reason": reason, "updated_by": actor_id})

        task = self._run((), work)
        logger.info(f"Task {task.code} reason recorded")
        return task

    def set_revision(
        self,
        task_id: int,
        revision: Optional[str],
        tenant_id: int,
        actor_id: int,
        attachments: Sequence[IncomingFile] = (),
    ) -> models.Task:
        """Start a correction cycle: revision notes, revision files and the move to revision."""
        stored = self._store_files(attachments, AttachmentCategory.REVISION)

        def work():
            task = crud.get_task(self.db, task_id, tenant_id)
            crud.update_task_fields(self.db, task, {
                "revision": revision,
                "status_id": TaskStatus.REVISION,
                "updated_by": actor_id,
            })
            crud.create_attachments(self.db, task.id, stored, AttachmentCategory.REVISION)
            return task

        task = self._run(stored, work)
        logger.info(f"Task {task.code} sent to revision with {len(stored)} file(s)")
        return task

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def approve_slot(
        self,
        task_id: int,
        slot_id: int,
        tenant_id: int,
        actor_id: int,
        note: Optional[str] = None,
    ) -> models.Task:
        """Approve one approval slot of a task."""
        return self._run((), lambda: approval_sequencer.approve_slot(
            self.db, task_id, slot_id, tenant_id, actor_id, note,
            enforce_order=self.settings.enforce_approval_order,
        ))

    def reject_slot(
        self,
        task_id: int,
        slot_id: int,
        tenant_id: int,
        actor_id: int,
        note: Optional[str] = None,
    ) -> models.Task:
        """Reject one approval slot of a task."""
        return self._run((), lambda: approval_sequencer.reject_slot(
            self.db, task_id, slot_id, tenant_id, actor_id, note,
            enforce_order=self.settings.enforce_approval_order,
        ))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, task_id: int, tenant_id: int) -> models.Task:
        with crud.reading(self.db):
            return crud.get_task(self.db, task_id, tenant_id)

    def get_by_code(self, code: str, tenant_id: int) -> models.Task:
        with crud.reading(self.db):
            return crud.get_task_by_code(self.db, code, tenant_id)

    def list_tasks(self, tenant_id: int, filters: schemas.TaskFilters) -> tuple[list[models.Task], int]:
        """List approved tasks. Any approval status filter is ignored."""
        with crud.reading(self.db):
            return crud.get_tasks(self.db, tenant_id, filters, crud.TaskListMode.TASKS)

    def list_requests(self, tenant_id: int, filters: schemas.TaskFilters) -> tuple[list[models.Task], int]:
        """List tasks in every approval state, honouring the approval status filter."""
        with crud.reading(self.db):
            return crud.get_tasks(self.db, tenant_id, filters, crud.TaskListMode.REQUESTS)
