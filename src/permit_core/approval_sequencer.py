"""Two-stage approval pipeline for tasks.

Every task owns two approval slots. Each decision is written to its slot
and the task's approval status is then derived from both slots:
- Slot 1 approved, slot 2 waiting: pending second approval
- Slot 2 approved, no slot rejected: approved
- Any slot rejected: rejected
Rejecting slot 1 also rejects slot 2 whatever its previous state.

A slot can be resolved exactly once. The write is a compare-and-swap from
waiting, so a second or concurrent resolution of the same slot fails with
AlreadyResolvedError instead of silently overwriting the first outcome.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models
from .errors import AlreadyResolvedError, ValidationError
from .models import ApprovalStatus

logger = logging.getLogger("permit-core.approval_sequencer")


class ApprovalAction(str, enum.Enum):
    """Decision an approver takes on a slot."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class ApprovalTransition:
    """Effects of one (action, sequence) event on the slots."""

    slot_status: ApprovalStatus
    cascade_to_later_slots: bool = False  # Later slots take the same outcome


# Transition table
# Maps (action, slot sequence) → effects on the slots
APPROVAL_TRANSITIONS: dict[tuple[ApprovalAction, int], ApprovalTransition] = {
    (ApprovalAction.APPROVE, 1): ApprovalTransition(slot_status=ApprovalStatus.APPROVED),
    (ApprovalAction.APPROVE, 2): ApprovalTransition(slot_status=ApprovalStatus.APPROVED),
    (ApprovalAction.REJECT, 1): ApprovalTransition(
        slot_status=ApprovalStatus.REJECTED,
        cascade_to_later_slots=True,
    ),
    (ApprovalAction.REJECT, 2): ApprovalTransition(slot_status=ApprovalStatus.REJECTED),
}


def derive_approval_status(
    first: ApprovalStatus,
    second: ApprovalStatus,
) -> ApprovalStatus:
    """
    Project the outcomes of both slots onto the task's aggregate status.

    Args:
        first: Status of slot 1
        second: Status of slot 2

    Returns:
        Rejected if either slot is rejected, Approved once slot 2 is approved,
        pending second approval once only slot 1 is approved, else waiting
    """
    if ApprovalStatus.REJECTED in (first, second):
        return ApprovalStatus.REJECTED
    if second == ApprovalStatus.APPROVED:
        return ApprovalStatus.APPROVED
    if first == ApprovalStatus.APPROVED:
        return ApprovalStatus.PENDING_SECOND_APPROVAL
    return ApprovalStatus.WAITING


def _check_order(db: Session, slot: models.ApprovalTask) -> None:
    for earlier in crud.list_approval_slots(db, slot.task_id):
        if earlier.sequence < slot.sequence and earlier.is_waiting:
            logger.warning(
                f"Blocked resolving slot {slot.id} (sequence {slot.sequence}): "
                f"sequence {earlier.sequence} is still waiting"
            )
            raise ValidationError(
                f"Approval sequence {earlier.sequence} must be resolved before sequence {slot.sequence}",
                field="sequence",
            )


def resolve_slot(
    db: Session,
    action: ApprovalAction,
    task_id: int,
    slot_id: int,
    tenant_id: int,
    actor_id: int,
    note: Optional[str] = None,
    enforce_order: bool = False,
) -> models.Task:
    """
    Apply an approve or reject decision to one approval slot of a task.

    Args:
        db: Database session (changes are flushed, the caller commits)
        action: Approve or reject
        task_id: Task id
        slot_id: Approval slot id, must belong to the task
        tenant_id: Tenant scope
        actor_id: Approver user id
        note: Optional approver note
        enforce_order: Refuse sequence 2 while sequence 1 is waiting

    Returns:
        The updated task

    Raises:
        NotFoundError: If the task is not visible or the slot is not one of its slots
        AlreadyResolvedError: If the slot is no longer waiting
        ValidationError: If order is enforced and an earlier slot is waiting
    """
    task = crud.get_task(db, task_id, tenant_id)
    slot = crud.get_approval_slot_by_id(db, task.id, slot_id)
    transition = APPROVAL_TRANSITIONS[(action, slot.sequence)]

    if enforce_order:
        _check_order(db, slot)

    now = models.utcnow()
    if not crud.resolve_approval_slot(db, slot, transition.slot_status, actor_id, note, now):
        logger.warning(
            f"Blocked {action.value} on slot {slot.id} of task {task.code}: "
            f"already {slot.approval_status_id.name.lower()}"
        )
        raise AlreadyResolvedError(slot.id, slot.sequence, slot.approval_status_id)

    if transition.cascade_to_later_slots:
        for later in crud.list_approval_slots(db, task.id):
            if later.sequence > slot.sequence:
                crud.resolve_approval_slot(
                    db, later, transition.slot_status, actor_id, note, now, only_if_waiting=False
                )

    outcomes = {s.sequence: s.approval_status_id for s in crud.list_approval_slots(db, task.id)}
    derived = derive_approval_status(outcomes[1], outcomes[2])

    fields = {"approval_status_id": derived, "updated_by": actor_id}
    if derived == ApprovalStatus.APPROVED and task.approval_status_id != ApprovalStatus.APPROVED:
        fields["approved_by"] = actor_id
        fields["approval_date"] = now
    elif derived != ApprovalStatus.APPROVED:
        # approved_by / approval_date describe a final approval only
        fields["approved_by"] = None
        fields["approval_date"] = None
    crud.update_task_fields(db, task, fields)

    logger.info(
        f"Slot {slot.sequence} of task {task.code}: {action.value} by user {actor_id}, "
        f"task approval status now {derived.name.lower()}"
    )
    return task


def approve_slot(
    db: Session,
    task_id: int,
    slot_id: int,
    tenant_id: int,
    actor_id: int,
    note: Optional[str] = None,
    enforce_order: bool = False,
) -> models.Task:
    """Approve one approval slot of a task. See ``resolve_slot``."""
    return resolve_slot(
        db, ApprovalAction.APPROVE, task_id, slot_id, tenant_id, actor_id, note, enforce_order
    )


def reject_slot(
    db: Session,
    task_id: int,
    slot_id: int,
    tenant_id: int,
    actor_id: int,
    note: Optional[str] = None,
    enforce_order: bool = False,
) -> models.Task:
    """Reject one approval slot of a task. See ``resolve_slot``."""
    return resolve_slot(
        db, ApprovalAction.REJECT, task_id, slot_id, tenant_id, actor_id, note, enforce_order
    )
