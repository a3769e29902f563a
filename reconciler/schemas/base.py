"""Base schema classes."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseResponse(BaseModel):
    """Base for result schemas built from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


class CamelModel(BaseModel):
    """Reasons documents are stored with camelCase keys.

    Dump with ``model_dump(by_alias=True, exclude_none=True)``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RowFailure(BaseModel):
    """One row a batch operation could not process."""

    row_id: int
    error: str
    error_type: str

    @classmethod
    def from_exception(cls, row_id: int, exc: BaseException) -> "RowFailure":
        return cls(row_id=row_id, error=str(exc), error_type=type(exc).__name__)
