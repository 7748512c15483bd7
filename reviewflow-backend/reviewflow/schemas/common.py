from pydantic import BaseModel, ConfigDict, Field


class PaginationMeta(BaseModel):
    total: int = Field(description="Rows matching the filters")
    limit: int
    offset: int
    count: int = Field(description="Rows in this page")
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={"example": {"total": 23, "limit": 20, "offset": 0, "count": 20, "has_next": True}}
    )


def pagination_meta(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(total=total, limit=limit, offset=offset, count=count, has_next=offset + count < total)


class FieldIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorBodyOut(BaseModel):
    code: str = Field(description="Stable machine-readable code, e.g. `opted_out` or `invalid_rating`")
    message: str
    request_id: str
    path: str
    details: list[FieldIssueOut] | None = Field(default=None, description="Per-field issues on 422 responses")


class ErrorOut(BaseModel):
    error: ErrorBodyOut
