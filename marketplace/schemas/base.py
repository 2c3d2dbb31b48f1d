"""
Base Pydantic schemas
"""

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Base schema for responses built from ORM rows"""
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        arbitrary_types_allowed=True,
    )
