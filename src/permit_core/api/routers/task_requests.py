"""Task request (approver inbox) API endpoints."""
import logging

from fastapi import APIRouter, Depends

from permit_core import schemas
from permit_core.task_lifecycle import TaskLifecycleManager

from ..dependencies import AuthContext, get_auth_context, get_task_manager
from .tasks import get_task_filters, to_list_response

logger = logging.getLogger("permit-core.task_requests")

router = APIRouter(tags=["task-requests"])


@router.get("/", response_model=schemas.TaskListResponse)
def list_task_requests(
    filters: schemas.TaskFilters = Depends(get_task_filters),
    auth: AuthContext = Depends(get_auth_context),
    manager: TaskLifecycleManager = Depends(get_task_manager),
):
    """
    List tasks in every approval state.

    Unlike /tasks, no approval status is forced: pass approval_status_id
    (20 waiting, 23 pending second approval, 22 approved, 21 rejected) to
    narrow the inbox.
    """
    tasks, total = manager.list_requests(auth.tenant_id, filters)
    logger.debug(f"Listed {len(tasks)} of {total} task requests for tenant {auth.tenant_id}")
    return to_list_response(tasks, total, filters)
