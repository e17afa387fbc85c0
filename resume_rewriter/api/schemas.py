"""Shared base for request/response bodies: camelCase on the wire, snake_case in Python."""
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CamelRequest(CamelModel):
    """Request bodies reject unknown fields."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")
