"""Tests for task persistence operations."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from permit_core import crud, models, schemas
from permit_core.errors import NotFoundError, StorageError, ValidationError
from permit_core.file_storage import StoredFile
from permit_core.models import ApprovalStatus, AttachmentCategory, TaskStatus

from conftest import TENANT_ID, OTHER_TENANT_ID, CREATOR_ID, FIRST_APPROVER_ID


def new_task(db, project_id, code, tenant_id=TENANT_ID, **fields):
    task = models.Task(
        tenant_id=tenant_id,
        project_id=project_id,
        code=code,
        title=fields.pop("title", f"Task {code}"),
        priority_id=fields.pop("priority_id", 1),
        created_by=CREATOR_ID,
        **fields,
    )
    with crud.transaction(db):
        crud.create_task_with_approval_slots(db, task)
    return task


class TestTransaction:
    """Test the unit-of-work helper."""

    def test_commits_on_success(self, db, projects):
        """Test that writes inside the block are committed."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        db.expire_all()

        assert crud.get_task(db, task.id, TENANT_ID).code == "ENG-TASK-0001"

    def test_rolls_back_engine_errors(self, db, projects):
        """Test that an engine error rolls back and propagates unchanged."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        with pytest.raises(ValidationError):
            with crud.transaction(db):
                crud.update_task_fields(db, task, {"title": "Changed"})
                raise ValidationError("stop")

        db.expire_all()
        assert crud.get_task(db, task.id, TENANT_ID).title == "Task ENG-TASK-0001"

    def test_wraps_database_errors(self, db):
        """Test that SQLAlchemy errors surface as StorageError."""
        with pytest.raises(StorageError):
            with crud.transaction(db):
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))


class TestCreateTask:
    """Test task creation with approval slots."""

    def test_two_waiting_slots(self, db, projects):
        """Test that a new task owns slots 1 and 2, both waiting."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        slots = crud.list_approval_slots(db, task.id)
        assert [slot.sequence for slot in slots] == [1, 2]
        assert all(slot.approval_status_id == ApprovalStatus.WAITING for slot in slots)
        assert all(slot.approved_by is None for slot in slots)

    def test_defaults(self, db, projects):
        """Test default execution and approval status."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        assert task.status_id == TaskStatus.TODO
        assert task.approval_status_id == ApprovalStatus.WAITING
        assert task.active is True

    def test_get_approval_slot_by_sequence(self, db, projects):
        """Test slot lookup by sequence."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        assert crud.get_approval_slot(db, task.id, 2).sequence == 2
        with pytest.raises(NotFoundError):
            crud.get_approval_slot(db, task.id, 3)


class TestGetTask:
    """Test task lookups."""

    def test_by_id_and_code(self, db, projects):
        """Test lookup by id and by code."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        assert crud.get_task(db, task.id, TENANT_ID).id == task.id
        assert crud.get_task_by_code(db, "ENG-TASK-0001", TENANT_ID).id == task.id

    def test_other_tenant_is_not_found(self, db, projects):
        """Test that a task id from another tenant resolves as not found."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        with pytest.raises(NotFoundError):
            crud.get_task(db, task.id, OTHER_TENANT_ID)
        with pytest.raises(NotFoundError):
            crud.get_task_by_code(db, "ENG-TASK-0001", OTHER_TENANT_ID)

    def test_missing(self, db, projects):
        """Test that unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            crud.get_task(db, 12345, TENANT_ID)

        assert exc_info.value.kind == "not_found"


class TestUpdateTaskFields:
    """Test partial task updates."""

    def test_only_supplied_fields_change(self, db, projects):
        """Test that omitted fields keep their value."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001", priority_id=3, description="Keep me")

        with crud.transaction(db):
            crud.update_task_fields(db, task, {"title": "Renamed"})
        db.expire_all()

        reloaded = crud.get_task(db, task.id, TENANT_ID)
        assert reloaded.title == "Renamed"
        assert reloaded.priority_id == 3
        assert reloaded.description == "Keep me"

    def test_explicit_none_clears(self, db, projects):
        """Test that a key present with None clears the column."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001", description="Old")

        with crud.transaction(db):
            crud.update_task_fields(db, task, {"description": None})

        assert crud.get_task(db, task.id, TENANT_ID).description is None

    @pytest.mark.parametrize("field", ["id", "tenant_id", "code", "created_by", "created_at"])
    def test_immutable_fields_rejected(self, db, projects, field):
        """Test that identity and audit fields cannot be changed."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        with pytest.raises(ValidationError) as exc_info:
            crud.update_task_fields(db, task, {field: None})

        assert exc_info.value.field == field

    def test_unknown_field_rejected(self, db, projects):
        """Test that unknown field names are rejected."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        with pytest.raises(ValidationError):
            crud.update_task_fields(db, task, {"colour": "blue"})


class TestSoftDelete:
    """Test soft deletion."""

    def test_hidden_but_children_remain(self, db, projects):
        """Test that a deleted task disappears from reads while its children stay."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        with crud.transaction(db):
            crud.create_attachments(
                db,
                task.id,
                [StoredFile(file_name="a.pdf", path="file/tasks/creation/a.pdf", size=10, content_type="application/pdf")],
                AttachmentCategory.CREATION,
            )
        with crud.transaction(db):
            crud.soft_delete_task(db, task.id, TENANT_ID)

        with pytest.raises(NotFoundError):
            crud.get_task(db, task.id, TENANT_ID)
        with pytest.raises(NotFoundError):
            crud.get_task_by_code(db, "ENG-TASK-0001", TENANT_ID)

        row = db.get(models.Task, task.id)
        assert row is not None
        assert row.deleted_at is not None
        assert len(crud.list_approval_slots(db, task.id)) == 2
        assert db.query(models.TaskFile).filter_by(task_id=task.id).count() == 1

    def test_delete_twice(self, db, projects):
        """Test that deleting an already deleted task is not found."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        with crud.transaction(db):
            crud.soft_delete_task(db, task.id, TENANT_ID)

        with pytest.raises(NotFoundError):
            crud.soft_delete_task(db, task.id, TENANT_ID)


class TestResolveApprovalSlot:
    """Test compare-and-swap slot resolution."""

    def test_resolves_waiting_slot(self, db, projects):
        """Test that a waiting slot is written."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        slot = crud.get_approval_slot(db, task.id, 1)
        now = models.utcnow()

        assert crud.resolve_approval_slot(db, slot, ApprovalStatus.APPROVED, FIRST_APPROVER_ID, "ok", now)
        db.commit()

        assert slot.approval_status_id == ApprovalStatus.APPROVED
        assert slot.approved_by == FIRST_APPROVER_ID
        assert slot.note == "ok"
        assert slot.approval_date == now

    def test_second_resolution_does_not_match(self, db, projects):
        """Test that a resolved slot is left untouched."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        slot = crud.get_approval_slot(db, task.id, 1)
        crud.resolve_approval_slot(db, slot, ApprovalStatus.APPROVED, FIRST_APPROVER_ID, None, models.utcnow())

        assert not crud.resolve_approval_slot(db, slot, ApprovalStatus.REJECTED, 999, "late", models.utcnow())
        assert slot.approval_status_id == ApprovalStatus.APPROVED
        assert slot.approved_by == FIRST_APPROVER_ID

    def test_forced_resolution(self, db, projects):
        """Test that only_if_waiting=False overwrites a resolved slot."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        slot = crud.get_approval_slot(db, task.id, 2)
        crud.resolve_approval_slot(db, slot, ApprovalStatus.APPROVED, FIRST_APPROVER_ID, None, models.utcnow())

        assert crud.resolve_approval_slot(
            db, slot, ApprovalStatus.REJECTED, 999, None, models.utcnow(), only_if_waiting=False
        )
        assert slot.approval_status_id == ApprovalStatus.REJECTED

    def test_slot_must_belong_to_task(self, db, projects):
        """Test that a slot id of another task is not found."""
        first = new_task(db, projects["eng"], "ENG-TASK-0001")
        second = new_task(db, projects["eng"], "ENG-TASK-0002")
        foreign_slot = crud.get_approval_slot(db, second.id, 1)

        with pytest.raises(NotFoundError):
            crud.get_approval_slot_by_id(db, first.id, foreign_slot.id)


class TestGetTasks:
    """Test listing with filters, modes and pagination."""

    @pytest.fixture
    def listed(self, db, projects):
        """Three approved tasks and one waiting task, oldest first."""
        base = models.utcnow() - timedelta(days=10)
        rows = [
            ("ENG-TASK-0001", "Login page", projects["eng"], ApprovalStatus.APPROVED, TaskStatus.DONE, 7, base),
            ("ENG-TASK-0002", "Signup flow", projects["eng"], ApprovalStatus.APPROVED, TaskStatus.TODO, None, base + timedelta(days=1)),
            ("OPS-TASK-0001", "Rotate login keys", projects["ops"], ApprovalStatus.APPROVED, TaskStatus.TODO, 7, base + timedelta(days=2)),
            ("ENG-TASK-0003", "Password reset", projects["eng"], ApprovalStatus.WAITING, TaskStatus.TODO, None, base + timedelta(days=3)),
        ]
        tasks = {}
        for code, title, project_id, approval, status, assignee, created in rows:
            tasks[code] = new_task(
                db, project_id, code, title=title, approval_status_id=approval,
                status_id=status, assigned_to=assignee, created_at=created,
            )
        new_task(db, projects["foreign"], "ENG-TASK-0001", tenant_id=OTHER_TENANT_ID, approval_status_id=ApprovalStatus.APPROVED)
        return tasks

    def codes(self, db, mode=crud.TaskListMode.TASKS, **filters):
        tasks, total = crud.get_tasks(db, TENANT_ID, schemas.TaskFilters(**filters), mode)
        return [task.code for task in tasks], total

    def test_tasks_mode_forces_approved(self, db, listed):
        """Test that the main listing only shows approved tasks, newest first."""
        codes, total = self.codes(db)

        assert codes == ["OPS-TASK-0001", "ENG-TASK-0002", "ENG-TASK-0001"]
        assert total == 3

    def test_tasks_mode_ignores_approval_filter(self, db, listed):
        """Test that the caller's approval filter does not widen the main listing."""
        codes, total = self.codes(db, approval_status_id=ApprovalStatus.WAITING)

        assert total == 3
        assert "ENG-TASK-0003" not in codes

    def test_requests_mode_shows_all_states(self, db, listed):
        """Test that the requests listing has no implicit approval filter."""
        codes, total = self.codes(db, mode=crud.TaskListMode.REQUESTS)

        assert total == 4
        assert codes[0] == "ENG-TASK-0003"

    def test_requests_mode_honours_approval_filter(self, db, listed):
        """Test that the requests listing applies the caller's approval filter."""
        codes, _ = self.codes(db, mode=crud.TaskListMode.REQUESTS, approval_status_id=ApprovalStatus.WAITING)

        assert codes == ["ENG-TASK-0003"]

    def test_search_matches_code_or_title(self, db, listed):
        """Test case-insensitive search on code and title."""
        assert self.codes(db, search="LOGIN")[0] == ["OPS-TASK-0001", "ENG-TASK-0001"]
        assert self.codes(db, search="ops-task")[0] == ["OPS-TASK-0001"]

    def test_field_filters(self, db, listed, projects):
        """Test project, status and assignee filters."""
        assert self.codes(db, project_id=projects["ops"])[0] == ["OPS-TASK-0001"]
        assert self.codes(db, status_id=TaskStatus.DONE)[0] == ["ENG-TASK-0001"]
        assert self.codes(db, assigned_to=7)[0] == ["OPS-TASK-0001", "ENG-TASK-0001"]

    def test_creation_date_range(self, db, listed):
        """Test that start and end dates bound the creation time inclusively."""
        first = listed["ENG-TASK-0001"].created_at
        second = listed["ENG-TASK-0002"].created_at

        assert self.codes(db, start_date=second)[0] == ["OPS-TASK-0001", "ENG-TASK-0002"]
        assert self.codes(db, end_date=second)[0] == ["ENG-TASK-0002", "ENG-TASK-0001"]
        assert self.codes(db, start_date=first, end_date=first)[0] == ["ENG-TASK-0001"]

    def test_date_only_end_covers_whole_day(self, db, listed):
        """Test that an end date without a time includes tasks created later that day."""
        day = listed["ENG-TASK-0001"].created_at.date()

        assert self.codes(db, end_date=day)[0] == ["ENG-TASK-0001"]
        assert self.codes(db, end_date=day.isoformat())[0] == ["ENG-TASK-0001"]
        assert schemas.TaskFilters(end_date="2026-01-31").end_date == datetime(2026, 1, 31, 23, 59, 59, 999999)

    def test_pagination(self, db, listed):
        """Test page and limit."""
        page_one, total = self.codes(db, page=1, limit=2)
        page_two, _ = self.codes(db, page=2, limit=2)

        assert total == 3
        assert page_one == ["OPS-TASK-0001", "ENG-TASK-0002"]
        assert page_two == ["ENG-TASK-0001"]

    def test_deleted_tasks_excluded(self, db, listed):
        """Test that soft-deleted tasks are not listed."""
        with crud.transaction(db):
            crud.soft_delete_task(db, listed["ENG-TASK-0002"].id, TENANT_ID)

        codes, total = self.codes(db)
        assert total == 2
        assert "ENG-TASK-0002" not in codes


class TestCreateAttachments:
    """Test attachment metadata rows."""

    def test_rows_carry_category(self, db, projects):
        """Test that rows record name, path, size, type and category."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")
        stored = [
            StoredFile(file_name="before.png", path="file/tasks/review/x.png", size=2048, content_type="image/png"),
            StoredFile(file_name="after.png", path="file/tasks/review/y.png", size=4096, content_type="image/png"),
        ]
        with crud.transaction(db):
            rows = crud.create_attachments(db, task.id, stored, AttachmentCategory.REVIEW)

        assert len(rows) == 2
        assert {row.attachment_category for row in rows} == {AttachmentCategory.REVIEW}
        assert rows[0].file_name == "before.png"
        assert rows[1].file_size == 4096

    def test_no_files(self, db, projects):
        """Test that an empty batch writes nothing."""
        task = new_task(db, projects["eng"], "ENG-TASK-0001")

        assert crud.create_attachments(db, task.id, [], AttachmentCategory.CREATION) == []
