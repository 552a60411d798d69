"""Task listing and cancellation endpoints."""

from fastapi import APIRouter, HTTPException

from agentshift.server.api.schemas import TaskCancelResponse, TaskListResponse, TaskStatusResponse
from agentshift.server.state import get_task_manager

router = APIRouter()


@router.get("", response_model=TaskListResponse)
async def list_tasks() -> TaskListResponse:
    manager = get_task_manager()
    return TaskListResponse(
        tasks=[TaskStatusResponse(**r.to_dict()) for r in manager.get_all()],
        running=manager.running_count(),
        max_concurrent=manager.max_concurrent,
    )


@router.post("/{task_id}/cancel", response_model=TaskCancelResponse)
async def cancel_task(task_id: str) -> TaskCancelResponse:
    """Cancel a running task; 404 if the task is unknown."""
    manager = get_task_manager()
    if manager.get(task_id) is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return TaskCancelResponse(task_id=task_id, cancelled=manager.cancel(task_id))
