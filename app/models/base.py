"""Shared model configuration."""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model exposing camelCase JSON names and accepting either form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
