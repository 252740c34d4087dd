import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklist.core.errors import StoreError
from tasklist.models import SortKey, StatusFilter, Task, TaskCreate, TaskQuery, TaskUpdate

logger = logging.getLogger(__name__)


class TaskService:
    @staticmethod
    async def list_tasks(params: TaskQuery, db: AsyncSession):
        query = select(Task)
        if params.status is StatusFilter.complete:
            query = query.where(col(Task.is_complete).is_(True))
        elif params.status is StatusFilter.incomplete:
            query = query.where(col(Task.is_complete).is_(False))
        if params.search:
            query = query.where(col(Task.title).ilike(f"%{params.search}%"))

        if params.sort is SortKey.name:
            query = query.order_by(col(Task.title).asc())
        elif params.sort is SortKey.status:
            query = query.order_by(col(Task.is_complete).asc())
        else:
            query = query.order_by(col(Task.created_at).desc())

        try:
            result = await db.exec(query)
            return result.all()
        except SQLAlchemyError as e:
            logger.error(f"List query failed: {e}")
            raise StoreError(str(e)) from e

    @staticmethod
    async def create_task(task_data: TaskCreate, db: AsyncSession):
        task = Task.model_validate(task_data)
        try:
            db.add(task)
            await db.flush()
            await db.refresh(task)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Insert failed: {e}")
            raise StoreError(str(e)) from e
        logger.info(f"Created task {task.id}")
        return task

    # Flush and refresh before commit so everything runs inside the
    # transaction that carries the caller's identity.
    @staticmethod
    async def update_task(task_id: uuid.UUID, task_data: TaskUpdate, db: AsyncSession):
        update_data = task_data.model_dump(exclude_unset=True)
        try:
            task = await db.get(Task, task_id)
            if not task:
                return None
            task.sqlmodel_update(update_data)
            db.add(task)
            await db.flush()
            await db.refresh(task)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Update of task {task_id} failed: {e}")
            raise StoreError(str(e)) from e
        logger.info(f"Updated task {task_id}: {sorted(update_data)}")
        return task

    @staticmethod
    async def delete_task(task_id: uuid.UUID, db: AsyncSession):
        try:
            task = await db.get(Task, task_id)
            if task:
                await db.delete(task)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Delete of task {task_id} failed: {e}")
            raise StoreError(str(e)) from e
        logger.info(f"Deleted task {task_id}")
