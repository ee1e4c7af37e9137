import logging
import uuid
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.intents import TaskData
from common.models import Context, GTDCategory, Task
from common.timeutil import utc_now

logger = logging.getLogger(__name__)

EDITABLE_TASK_COLUMNS = {"title", "description", "due_date", "context_id", "category"}
LIST_LIMIT = 10


def clean_context_name(name: str) -> str:
    return (name or "").strip().lstrip("@").strip()


class TaskStore:
    """Task and context access scoped by user id."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_context_by_name(self, user_id: str, name: str) -> Optional[Context]:
        wanted = clean_context_name(name).lower()
        if not wanted:
            return None
        stmt = (
            select(Context)
            .where(Context.user_id == user_id, func.lower(func.trim(Context.name)) == wanted)
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_task(self, user_id: str, task_id: Optional[str]) -> Optional[Task]:
        if not task_id:
            return None
        stmt = select(Task).where(Task.id == task_id, Task.user_id == user_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def find_task_by_source_event(self, user_id: str, source_event_id: str) -> Optional[Task]:
        stmt = select(Task).where(Task.user_id == user_id, Task.source_event_id == source_event_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def create_task(
        self,
        user_id: str,
        task_data: TaskData,
        context_id: Optional[str] = None,
        description: Optional[str] = None,
        source_event_id: Optional[str] = None,
    ) -> Tuple[Task, bool]:
        """Create a task, at most once per source event. Returns (task, created)."""
        if source_event_id:
            existing = await self.find_task_by_source_event(user_id, source_event_id)
            if existing:
                logger.info("Task already created for event=%s task=%s", source_event_id, existing.id)
                return existing, False

        now = utc_now()
        task = Task(
            id=f"tsk_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            title=task_data.title,
            description=task_data.description or description,
            category=task_data.category,
            context_id=context_id,
            due_date=task_data.due_date,
            estimated_minutes=task_data.estimated_minutes,
            completed=False,
            completed_at=None,
            is_quick_action=task_data.is_quick_action,
            source=settings.GATEWAY_SOURCE,
            source_event_id=source_event_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(task)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if not source_event_id:
                raise
            existing = await self.find_task_by_source_event(user_id, source_event_id)
            if existing is None:
                raise
            return existing, False
        return task, True

    async def complete_task(self, task: Task) -> Task:
        now = utc_now()
        task.completed = True
        task.completed_at = now
        task.updated_at = now
        await self.db.commit()
        return task

    async def update_task(self, task: Task, column: str, value) -> Task:
        """Change exactly one editable column."""
        if column not in EDITABLE_TASK_COLUMNS:
            raise ValueError(f"Column is not editable: {column}")
        setattr(task, column, value)
        task.updated_at = utc_now()
        await self.db.commit()
        return task

    async def list_tasks(self, user_id: str, view_filter: str, today: date, limit: int = LIST_LIMIT) -> List[Task]:
        stmt = select(Task).where(Task.user_id == user_id, Task.completed.is_(False))
        if view_filter == "today":
            stmt = stmt.where(Task.due_date == today)
        elif view_filter == "next_actions":
            stmt = stmt.where(Task.category == GTDCategory.NextAction)
        else:
            stmt = stmt.where(Task.category == GTDCategory.Inbox)
        stmt = stmt.order_by(Task.due_date.asc().nulls_last(), Task.created_at.asc()).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())
