"""Task repository - read-only lookups into tasks owned by the project side."""
from abc import ABC, abstractmethod
from typing import Optional

from app.models.task import Task
from app.repositories.time_entry_repository import parse_object_id, translate_driver_errors


class TaskRepository(ABC):
    """Repository interface for task lookups."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Find a task by its ID. Returns None if not found."""


class MongoTaskRepository(TaskRepository):
    """MongoDB implementation reading the shared tasks collection."""

    def __init__(self, db):
        self.db = db
        self.tasks = db["tasks"]

    async def get_task(self, task_id: str) -> Optional[Task]:
        object_id = parse_object_id(task_id)
        if object_id is None:
            return None

        with translate_driver_errors():
            doc = await self.tasks.find_one({"_id": object_id})

        if not doc:
            return None

        return Task(
            _id=str(doc["_id"]),
            project_id=str(doc["project_id"]),
            title=doc.get("title", ""),
        )
