"""Request models for the HTTP API."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from dbconsole.services.dataview import Page, Sort
from dbconsole.transactions.models import OpKind, OpSpec


class LoginRequest(BaseModel):
    """Login request model."""

    username: str = Field(min_length=1, max_length=63)
    password: str = Field(min_length=1, max_length=1024)


class PageParams(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)

    def page(self) -> Page:
        return Page(offset=self.offset, limit=self.limit)


class ReadRequest(PageParams):
    where: Optional[str] = Field(default=None, max_length=8192)
    sort_column: Optional[str] = None
    descending: bool = False

    def sort(self) -> Optional[Sort]:
        if not self.sort_column:
            return None
        return Sort(column=self.sort_column, descending=self.descending)


class QueryRequest(PageParams):
    database: str = Field(min_length=1)
    sql: str = Field(min_length=1, max_length=1_000_000)
    parameters: Optional[list[Any]] = None


class TableTarget(BaseModel):
    database: str = Field(min_length=1)
    schema_name: str = Field(min_length=1)
    table: str = Field(min_length=1)


class ParentRequest(BaseModel):
    constraint: str = Field(min_length=1)
    row: dict[str, Any]


class ChildrenRequest(PageParams):
    child_schema: str = Field(min_length=1)
    child_table: str = Field(min_length=1)
    constraint: str = Field(min_length=1)
    row: dict[str, Any]


class OpRequest(BaseModel):
    """One staged edit.

    ``update-cell`` needs a row and ``column``; ``delete-row`` needs a
    row; ``insert-row`` takes ``values``. A row is either ``row_key`` (the
    primary key of an existing row) or ``new_row`` (a token returned by an
    earlier insert).
    """

    kind: OpKind
    row_key: Optional[dict[str, Any]] = None
    new_row: Optional[str] = None
    column: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    values: Optional[dict[str, Any]] = None

    def spec(self) -> OpSpec:
        return OpSpec(
            kind=self.kind,
            row_key=self.row_key,
            new_row=self.new_row,
            column=self.column,
            old_value=self.old_value,
            new_value=self.new_value,
            values=self.values,
        )
