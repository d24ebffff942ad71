from pydantic import BaseModel, ConfigDict


class CursorPageMeta(BaseModel):
    limit: int
    count: int
    next_cursor: str | None = None
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "limit": 50,
                "count": 50,
                "next_cursor": "8mK3nTqXqz7Jt3yZxS4aVb",
                "has_next": True,
            }
        }
    )


class ValidationIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[ValidationIssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": {
                    "code": "not_found",
                    "message": "Rule run 8mK3nTqXqz7Jt3yZxS4aVb not found",
                    "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
                    "path": "/runs/8mK3nTqXqz7Jt3yZxS4aVb",
                    "details": None,
                }
            }
        }
    )
