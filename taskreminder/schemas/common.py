"""Response envelopes shared by all routes."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    """Single-object envelope; ``code`` is 0 on success, else the HTTP status."""

    code: int = Field(default=0)
    message: str = Field(default="success")
    data: T | None = Field(default=None)


class PaginatedResponse(BaseModel, Generic[T]):
    """List envelope with page metadata."""

    code: int = Field(default=0)
    message: str = Field(default="success")
    data: list[T] = Field(default_factory=list)
    total: int = Field(default=0, ge=0, description="Rows matching the query")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        """Row offset for the current page."""
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size
