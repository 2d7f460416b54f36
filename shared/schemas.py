from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, renders camelCase JSON."""

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True
