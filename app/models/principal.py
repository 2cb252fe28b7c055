"""Authenticated caller."""
from app.models.base import CamelModel


class Principal(CamelModel):
    """The user on whose behalf an operation runs."""

    user_id: str
    role: str = "user"
