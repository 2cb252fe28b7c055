"""Task model - read-only view of tasks owned elsewhere."""
from pydantic import Field

from app.models.base import CamelModel


class Task(CamelModel):
    """A task that time can be tracked against."""

    id: str = Field(alias="_id", serialization_alias="id")
    project_id: str
    title: str = ""
