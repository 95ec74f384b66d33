from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    """Base schema: snake_case in Python, camelCase on the wire"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


class PageMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ApiResponse(CamelModel, Generic[T]):
    """Success envelope"""

    success: bool = True
    data: T
    meta: Optional[PageMeta] = None


class ErrorBody(CamelModel):
    code: str
    message: str
    details: Any = None


class ErrorResponse(CamelModel):
    """Failure envelope"""

    success: bool = False
    error: ErrorBody
