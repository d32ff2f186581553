"""
Task code generation.

Codes look like ``ENG-TASK-0007``: the project's short code, a fixed marker
and a zero-padded per-project number. Numbers come from a counter row in
``task_code_sequences`` that is read under a row lock, so two concurrent
creations for the same project never receive the same number.

The unique constraint on ``tasks(tenant_id, code)`` is the final guard. A
caller that hits it (see ``is_code_collision``) rolls back and asks for a
fresh code.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models
from .errors import NotFoundError

logger = logging.getLogger("permit-core.code_generator")

TASK_CODE_MARKER = "TASK"
TASK_NUMBER_WIDTH = 4

# Constraint names (PostgreSQL) and column lists (SQLite) reported when two
# writers race for the same code or the same counter row
CODE_COLLISION_MARKERS = (
    "uq_tasks_tenant_code",
    "uq_task_code_sequences_tenant_project",
    "tasks.tenant_id, tasks.code",
    "task_code_sequences.tenant_id, task_code_sequences.project_id",
)


def format_task_code(project_code: str, number: int) -> str:
    """
    Format a task code.

    Numbers wider than four digits are kept whole, e.g. ``ENG-TASK-12345``.
    """
    return f"{project_code}-{TASK_CODE_MARKER}-{number:0{TASK_NUMBER_WIDTH}d}"


def next_task_number(db: Session, project_id: int, tenant_id: int) -> int:
    """
    Reserve the next task number for a project.

    The counter row is created on first use, seeded from the number of task
    rows the project already has (deleted ones included, since their codes
    stay taken).

    Args:
        db: Database session (the reservation commits with the caller's transaction)
        project_id: Project id
        tenant_id: Tenant id

    Returns:
        The reserved number
    """
    sequence = db.query(models.TaskCodeSequence).filter(
        models.TaskCodeSequence.tenant_id == tenant_id,
        models.TaskCodeSequence.project_id == project_id,
    ).with_for_update().first()

    if sequence is None:
        existing = crud.count_project_tasks(db, project_id, tenant_id)
        sequence = models.TaskCodeSequence(
            tenant_id=tenant_id,
            project_id=project_id,
            next_number=existing + 1,
        )
        db.add(sequence)
        db.flush()
        logger.debug(f"Seeded code counter for project {project_id} at {existing + 1}")

    number = sequence.next_number
    sequence.next_number = number + 1
    db.flush()
    return number


def generate_code(db: Session, project_id: int, tenant_id: int) -> str:
    """
    Generate the next unused task code for a project.

    Numbers whose code is already taken in the tenant are skipped, which
    repairs a counter that fell behind the tasks table.

    Args:
        db: Database session
        project_id: Project id
        tenant_id: Tenant id

    Returns:
        New task code

    Raises:
        NotFoundError: If the project is not visible to the tenant
    """
    project = crud.get_project(db, project_id, tenant_id)
    if not project:
        raise NotFoundError("Project", project_id)

    while True:
        number = next_task_number(db, project.id, tenant_id)
        code = format_task_code(project.code, number)
        if not crud.code_exists(db, tenant_id, code):
            logger.debug(f"Generated task code {code}")
            return code
        logger.warning(f"Task code {code} already taken, skipping")


def is_code_collision(exc: IntegrityError) -> bool:
    """Check whether an IntegrityError came from a task code or counter race."""
    message = str(exc.orig)
    return any(marker in message for marker in CODE_COLLISION_MARKERS)
