import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklist.database import get_db
from tasklist.models import SortKey, StatusFilter, TaskCreate, TaskQuery, TaskResponse, TaskUpdate
from tasklist.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("", response_model=list[TaskResponse])
async def get_tasks(
    search: str | None = None,
    sort: str | None = None,
    status: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """
    List tasks, filtered and ordered by the query descriptor.

    Unknown sort or status values fall back to newest-first, unfiltered.
    """
    params = TaskQuery(
        search=search or "",
        sort=_choice(SortKey, sort, SortKey.created_at),
        status=_choice(StatusFilter, status, StatusFilter.all),
    )
    return await TaskService.list_tasks(params, db)


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, db: AsyncSession = Depends(get_db)):
    """Create a new task"""
    return await TaskService.create_task(task_data, db)


@router.put("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: uuid.UUID, task_data: TaskUpdate, db: AsyncSession = Depends(get_db)
):
    """Apply a partial update; omitted fields are left untouched"""
    task = await TaskService.update_task(task_id, task_data, db)
    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with id {task_id} not found",
        )
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    await TaskService.delete_task(task_id, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _choice(enum, value: str | None, default):
    try:
        return enum(value)
    except ValueError:
        return default
